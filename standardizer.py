"""
Response standardization

Every document that leaves the API passes through one of these functions, so
the client always sees the same keys with the same types no matter which
optional fields a stored document happens to carry. Defaults live here and
nowhere else: "" for text, 0 for counters, [] for lists, None for optional
relations and sub-documents. Dates are ISO-8601 UTC with milliseconds and a
trailing Z.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId

logger = logging.getLogger(__name__)

BREAKDOWN_KEYS = ("bugs_reported", "bugs_resolved", "comments", "contributions")


# -----------------------------
# Scalars
# -----------------------------

def standardize_date(value: Any) -> Optional[str]:
    if not value:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable date value: %r", value)
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _id(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, dict):
        return _id(value.get("_id"))
    return str(value)


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _str(value: Any) -> str:
    return str(value) if value is not None else ""


# -----------------------------
# Points
# -----------------------------

def standardize_points(points: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    points = points or {}
    breakdown = points.get("breakdown") or {}
    return {
        "total": _int(points.get("total")),
        "earned": _int(points.get("earned")),
        "spent": _int(points.get("spent")),
        "breakdown": {key: _int(breakdown.get(key)) for key in BREAKDOWN_KEYS},
    }


def standardize_history_entry(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "points": _int(entry.get("points")),
        "reason": _str(entry.get("reason")),
        "bug_id": _id(entry.get("bug_id")),
        "metadata": {k: _jsonable(v) for k, v in (entry.get("metadata") or {}).items()},
        "awarded_at": standardize_date(entry.get("awarded_at")),
        "previous_total": _int(entry.get("previous_total")),
        "new_total": _int(entry.get("new_total")),
    }


def _jsonable(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return standardize_date(value)
    return value


def determine_badge(points: int) -> str:
    if points >= 1000:
        return "Expert"
    if points >= 500:
        return "Advanced"
    if points >= 200:
        return "Intermediate"
    if points >= 50:
        return "Beginner"
    return "Newcomer"


# -----------------------------
# References
# -----------------------------

def standardize_user_reference(user: Any) -> Optional[Dict[str, Any]]:
    if not user:
        return None
    if not isinstance(user, dict):
        # unpopulated reference
        user = {"_id": user}
    return {
        "id": _id(user.get("_id")),
        "name": _str(user.get("name")),
        "email": _str(user.get("email")),
        "username": user.get("username") or None,
        "avatar": _str(user.get("avatar")),
        "total_points": _int((user.get("points") or {}).get("total")),
    }


def standardize_project_reference(project: Any) -> Optional[Dict[str, Any]]:
    if not project:
        return None
    if not isinstance(project, dict):
        project = {"_id": project}
    return {
        "id": _id(project.get("_id")),
        "name": _str(project.get("name")),
        "key": _str(project.get("key")),
        "description": _str(project.get("description")),
    }


# -----------------------------
# Users
# -----------------------------

def standardize_user_profile(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Full profile of a user. Never exposes google_id or the points history."""
    if not user:
        return None
    github = user.get("github_profile") or {}
    statistics = user.get("statistics") or {}
    return {
        "id": _id(user.get("_id")),
        "name": _str(user.get("name")),
        "email": _str(user.get("email")),
        "username": user.get("username") or None,
        "avatar": _str(user.get("avatar")),
        "role": user.get("role") or "developer",
        "department": _str(user.get("department")),
        "industry": user.get("industry") or None,
        "phone_number": user.get("phone_number") or None,
        "is_active": bool(user.get("is_active", True)),
        "onboarding_completed": bool(user.get("onboarding_completed")),
        "points": standardize_points(user.get("points")),
        "github_profile": {
            "username": github.get("username") or None,
            "url": github.get("url") or None,
        },
        "statistics": {
            "pull_requests_submitted": _int(statistics.get("pull_requests_submitted")),
            "pull_requests_merged": _int(statistics.get("pull_requests_merged")),
        },
        "last_login_at": standardize_date(user.get("last_login_at")),
        "created_at": standardize_date(user.get("created_at")),
        "updated_at": standardize_date(user.get("updated_at")),
    }


def standardize_user_stats(stats: Optional[Dict[str, Any]]) -> Dict[str, int]:
    stats = stats or {}
    return {
        key: _int(stats.get(key))
        for key in ("total_points", "bugs_reported", "bugs_resolved", "pull_requests", "projects_created", "active_bugs")
    }


def standardize_leaderboard_entry(user: Dict[str, Any], rank: int) -> Dict[str, Any]:
    total = _int((user.get("points") or {}).get("total"))
    return {
        "id": _id(user.get("_id")),
        "name": _str(user.get("name")),
        "email": _str(user.get("email")),
        "username": user.get("username") or None,
        "avatar": _str(user.get("avatar")),
        "points": total,
        "bugs_fixed": _int(((user.get("points") or {}).get("breakdown") or {}).get("bugs_resolved")),
        "rank": int(rank),
        "badge": determine_badge(total),
        "joined_at": standardize_date(user.get("created_at")),
    }


# -----------------------------
# Projects
# -----------------------------

def standardize_project(project: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not project:
        return None
    stats = project.get("stats") or {}
    repository = project.get("repository")
    return {
        "id": _id(project.get("_id")),
        "name": _str(project.get("name")),
        "key": _str(project.get("key")),
        "description": _str(project.get("description")),
        "status": project.get("status") or "active",
        "priority": project.get("priority") or "medium",
        "category": project.get("category") or "web",
        "owner": standardize_user_reference(project.get("owner")),
        "members": [
            {
                "user": standardize_user_reference(m.get("user")),
                "role": m.get("role") or "developer",
                "joined_at": standardize_date(m.get("joined_at")),
            }
            for m in project.get("members") or []
        ],
        "stats": {
            key: _int(stats.get(key))
            for key in ("total_bugs", "open_bugs", "in_progress_bugs", "resolved_bugs", "closed_bugs")
        },
        "repository": {
            "url": _str(repository.get("url")),
            "branch": repository.get("branch") or "main",
        } if repository else None,
        "tags": list(project.get("tags") or []),
        "start_date": standardize_date(project.get("start_date")),
        "end_date": standardize_date(project.get("end_date")),
        "created_at": standardize_date(project.get("created_at")),
        "updated_at": standardize_date(project.get("updated_at")),
    }


# -----------------------------
# Bugs
# -----------------------------

def standardize_github_repo(repo: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not repo:
        return None
    return {
        "url": _str(repo.get("url")),
        "owner": _str(repo.get("owner")),
        "name": _str(repo.get("name")),
        "is_public": bool(repo.get("is_public")),
    }


def standardize_fork(fork: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "github_username": _str(fork.get("github_username")),
        "user": standardize_user_reference(fork.get("user_id")),
        "fork_url": _str(fork.get("fork_url")),
        "created_at": standardize_date(fork.get("created_at")),
    }


def standardize_pull_request(pr: Dict[str, Any]) -> Dict[str, Any]:
    author = pr.get("author") or {}
    return {
        "number": _int(pr.get("number")),
        "url": _str(pr.get("url")),
        "title": _str(pr.get("title")),
        "status": pr.get("status") or "open",
        "author": {
            "github_username": _str(author.get("github_username")),
            "user": standardize_user_reference(author.get("user_id")),
        },
        "created_at": standardize_date(pr.get("created_at")),
        "merged_at": standardize_date(pr.get("merged_at")),
    }


def _steps(steps: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    if not steps:
        return None
    ordered = sorted(steps, key=lambda s: _int(s.get("order")))
    return "\n".join(_str(s.get("step")) for s in ordered)


def standardize_bug(bug: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not bug:
        return None
    environment = bug.get("environment")
    resolution_pr = bug.get("resolution_pull_request")
    return {
        "id": _id(bug.get("_id")),
        "bug_id": bug.get("bug_id") or _id(bug.get("_id")),
        "title": _str(bug.get("title")),
        "description": _str(bug.get("description")),
        "status": bug.get("status") or "open",
        "priority": bug.get("priority") or "medium",
        "severity": bug.get("severity") or "minor",
        "category": bug.get("category") or "bug",
        "resolution": _str(bug.get("resolution")),
        "project": standardize_project_reference(bug.get("project")),
        "reported_by": standardize_user_reference(bug.get("reported_by")),
        "assigned_to": standardize_user_reference(bug.get("assigned_to")),
        "resolved_by": standardize_user_reference(bug.get("resolved_by")),
        "environment": {
            key: _str(environment.get(key)) for key in ("os", "browser", "version", "device")
        } if environment else None,
        "steps_to_reproduce": _steps(bug.get("steps_to_reproduce")),
        "expected_result": bug.get("expected_result") or None,
        "actual_result": bug.get("actual_result") or None,
        "tags": list(bug.get("tags") or []),
        "bounty_points": _int(bug.get("bounty_points")),
        "github_repo": standardize_github_repo(bug.get("github_repo")),
        "repository_url": (bug.get("github_repo") or {}).get("url") or None,
        "forks": [standardize_fork(f) for f in bug.get("forks") or []],
        "pull_requests": [standardize_pull_request(pr) for pr in bug.get("pull_requests") or []],
        "resolution_pull_request": {
            "number": _int(resolution_pr.get("number")),
            "url": _str(resolution_pr.get("url")),
            "title": _str(resolution_pr.get("title")),
        } if resolution_pr else None,
        "points_awarded": [
            {
                "user_id": _id(a.get("user_id")),
                "points": _int(a.get("points")),
                "reason": _str(a.get("reason")),
                "awarded_at": standardize_date(a.get("awarded_at")),
                "awarded_by": _id(a.get("awarded_by")),
            }
            for a in bug.get("points_awarded") or []
        ],
        "comments": [
            {
                "id": _id(c.get("_id")),
                "content": _str(c.get("content")),
                "author": standardize_user_reference(c.get("author")),
                "points_awarded": _int(c.get("points_awarded")),
                "is_resolution_comment": bool(c.get("is_resolution_comment")),
                "created_at": standardize_date(c.get("created_at")),
            }
            for c in bug.get("comments") or []
        ],
        "activity": [
            {
                "user": _id(a.get("user")),
                "action": _str(a.get("action")),
                "field": a.get("field") or None,
                "old_value": _jsonable(a.get("old_value")),
                "new_value": _jsonable(a.get("new_value")),
                "timestamp": standardize_date(a.get("timestamp")),
            }
            for a in bug.get("activity") or []
        ],
        "created_at": standardize_date(bug.get("created_at")),
        "updated_at": standardize_date(bug.get("updated_at")),
        "resolved_at": standardize_date(bug.get("resolved_at")),
        "closed_at": standardize_date(bug.get("closed_at")),
    }


# -----------------------------
# Envelopes
# -----------------------------

def standardize_pagination(current_page: int, total_items: int, limit: int) -> Dict[str, Any]:
    limit = max(int(limit), 1)
    total_pages = max((int(total_items) + limit - 1) // limit, 1)
    return {
        "current_page": int(current_page),
        "total_pages": total_pages,
        "total_items": int(total_items),
        "has_next": current_page < total_pages,
        "has_prev": current_page > 1,
        "limit": limit,
    }


def _timestamp() -> str:
    return standardize_date(datetime.now(timezone.utc))


def success_response(data: Any = None, message: str = "Success", **extra: Any) -> Dict[str, Any]:
    return {
        "success": True,
        "message": str(message),
        "data": data,
        "timestamp": _timestamp(),
        **extra,
    }


def error_response(message: str, error: Any = None, code: Optional[int] = None) -> Dict[str, Any]:
    return {
        "success": False,
        "message": str(message),
        "error": error,
        "code": int(code) if code else None,
        "timestamp": _timestamp(),
    }
