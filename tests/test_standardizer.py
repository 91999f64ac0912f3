from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

from standardizer import (
    determine_badge, error_response, standardize_bug, standardize_date, standardize_leaderboard_entry,
    standardize_pagination, standardize_points, standardize_project, standardize_user_profile,
    standardize_user_reference, standardize_user_stats, success_response,
)


def test_standardize_points_defaults():
    zero = {
        "total": 0,
        "earned": 0,
        "spent": 0,
        "breakdown": {"bugs_reported": 0, "bugs_resolved": 0, "comments": 0, "contributions": 0},
    }
    assert standardize_points(None) == zero
    assert standardize_points({}) == zero
    assert standardize_points({"total": 7, "breakdown": {"comments": 5}})["breakdown"]["comments"] == 5


def test_standardize_date():
    assert standardize_date(datetime(2024, 1, 2, 3, 4, 5, 678000)) == "2024-01-02T03:04:05.678Z"
    plus_two = timezone(timedelta(hours=2))
    assert standardize_date(datetime(2024, 1, 2, 5, 4, 5, tzinfo=plus_two)) == "2024-01-02T03:04:05.000Z"
    assert standardize_date("2024-01-02T03:04:05Z") == "2024-01-02T03:04:05.000Z"
    assert standardize_date("yesterday") is None
    assert standardize_date(None) is None
    assert standardize_date(12345) is None


def test_user_reference_handles_bare_ids():
    oid = ObjectId()
    ref = standardize_user_reference(oid)
    assert ref["id"] == str(oid)
    assert ref["name"] == ""
    assert ref["username"] is None
    assert ref["total_points"] == 0
    assert standardize_user_reference(None) is None


def test_user_profile_hides_private_fields():
    user = {
        "_id": ObjectId(),
        "name": "Alice",
        "email": "alice@example.com",
        "google_id": "secret",
        "points_history": [{"points": 10}],
        "points": {"total": 10},
    }
    profile = standardize_user_profile(user)
    assert "google_id" not in profile
    assert "points_history" not in profile
    assert profile["points"]["total"] == 10
    assert profile["role"] == "developer"
    assert profile["github_profile"] == {"username": None, "url": None}


def test_standardize_bug_fills_defaults():
    oid = ObjectId()
    bug = standardize_bug({"_id": oid, "title": "Crash"})
    assert bug["id"] == str(oid)
    assert bug["bug_id"] == str(oid)
    assert bug["status"] == "open"
    assert bug["priority"] == "medium"
    assert bug["severity"] == "minor"
    assert bug["description"] == ""
    assert bug["comments"] == []
    assert bug["forks"] == []
    assert bug["environment"] is None
    assert bug["project"] is None
    assert bug["repository_url"] is None
    assert standardize_bug(None) is None


def test_standardize_bug_orders_steps_and_exposes_repository_url():
    bug = standardize_bug({
        "_id": ObjectId(),
        "steps_to_reproduce": [{"step": "second", "order": 2}, {"step": "first", "order": 1}],
        "github_repo": {"url": "https://github.com/o/r", "owner": "o", "name": "r", "is_public": True},
    })
    assert bug["steps_to_reproduce"] == "first\nsecond"
    assert bug["repository_url"] == "https://github.com/o/r"
    assert bug["github_repo"]["owner"] == "o"


def test_standardize_project_stats_default_to_zero():
    project = standardize_project({"_id": ObjectId(), "name": "P", "key": "PR"})
    assert project["stats"]["total_bugs"] == 0
    assert project["members"] == []
    assert project["repository"] is None
    assert project["status"] == "active"


def test_user_stats_shape():
    stats = standardize_user_stats({"bugs_reported": "3", "total_points": None})
    assert stats == {
        "total_points": 0,
        "bugs_reported": 3,
        "bugs_resolved": 0,
        "pull_requests": 0,
        "projects_created": 0,
        "active_bugs": 0,
    }


@pytest.mark.parametrize("points,badge", [
    (0, "Newcomer"), (49, "Newcomer"), (50, "Beginner"), (200, "Intermediate"),
    (500, "Advanced"), (999, "Advanced"), (1000, "Expert"),
])
def test_determine_badge(points, badge):
    assert determine_badge(points) == badge


def test_leaderboard_entry():
    entry = standardize_leaderboard_entry(
        {"_id": ObjectId(), "name": "Bob", "points": {"total": 75, "breakdown": {"bugs_resolved": 25}}}, 1,
    )
    assert entry["points"] == 75
    assert entry["bugs_fixed"] == 25
    assert entry["rank"] == 1
    assert entry["badge"] == "Beginner"


def test_leaderboard_entry_with_null_breakdown():
    entry = standardize_leaderboard_entry({"_id": "x", "points": {"total": 5, "breakdown": None}}, 3)
    assert entry["points"] == 5
    assert entry["bugs_fixed"] == 0
    assert entry["badge"] == "Newcomer"

    bare = standardize_leaderboard_entry({"_id": "y", "points": None}, 4)
    assert bare["points"] == 0
    assert bare["bugs_fixed"] == 0


def test_pagination():
    page = standardize_pagination(2, 25, 10)
    assert page == {
        "current_page": 2,
        "total_pages": 3,
        "total_items": 25,
        "has_next": True,
        "has_prev": True,
        "limit": 10,
    }
    empty = standardize_pagination(1, 0, 10)
    assert empty["total_pages"] == 1
    assert empty["has_next"] is False


def test_envelopes():
    ok = success_response({"a": 1}, "Done", extra="x")
    assert ok["success"] is True
    assert ok["data"] == {"a": 1}
    assert ok["extra"] == "x"
    assert ok["timestamp"].endswith("Z")

    err = error_response("Nope", {"field": "title"}, 400)
    assert err["success"] is False
    assert err["error"] == {"field": "title"}
    assert err["code"] == 400
