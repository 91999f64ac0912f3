import pytest
from bson import ObjectId

from errors import InvalidIdentifier
from identifiers import (
    ExternalId, NativeId, as_object_id, classify_bug_identifier, classify_user_identifier,
    get_bug_with_population, populate_bug, resolve_bug, resolve_user,
)


def test_classify_user_identifier():
    oid = str(ObjectId())
    assert classify_user_identifier(oid) == NativeId(oid)
    assert classify_user_identifier("a" * 28) == ExternalId("a" * 28)
    assert classify_user_identifier(f"  {oid}  ") == NativeId(oid)


@pytest.mark.parametrize("value", [None, "", "   "])
def test_empty_user_identifier_is_required(value):
    with pytest.raises(InvalidIdentifier, match="User identifier is required"):
        classify_user_identifier(value)


@pytest.mark.parametrize("value", ["abc", "a" * 27, "a" * 29, "not-an-id!", "g" * 24 + "!!!!"])
def test_malformed_user_identifier(value):
    with pytest.raises(InvalidIdentifier, match="Invalid user identifier format"):
        classify_user_identifier(value)


def test_classify_bug_identifier():
    oid = str(ObjectId())
    assert classify_bug_identifier(oid) == NativeId(oid)
    assert classify_bug_identifier("PROJ-001") == ExternalId("PROJ-001")
    assert classify_bug_identifier("A1B-42") == ExternalId("A1B-42")
    for bad in ("proj-001", "PROJ001", "PROJ-", "-001", "1AB-001"):
        with pytest.raises(InvalidIdentifier, match="Invalid bug identifier format"):
            classify_bug_identifier(bad)
    with pytest.raises(InvalidIdentifier, match="Bug identifier is required"):
        classify_bug_identifier("")


def test_resolve_user_by_object_id_and_external_id(make_user, db):
    alice = make_user("alice", google_id="A" * 28)
    assert resolve_user(db, str(alice["_id"]))["_id"] == alice["_id"]
    assert resolve_user(db, "A" * 28)["_id"] == alice["_id"]
    assert resolve_user(db, "B" * 28) is None


def test_native_id_falls_through_to_external_field(make_user, db):
    # 24 hex chars that are not an _id but are stored as the external id
    external = "ab" * 12
    bob = make_user("bob", google_id=external)
    assert resolve_user(db, external)["_id"] == bob["_id"]


def test_resolve_bug_by_code_and_id(make_user, make_bug, db):
    alice = make_user("alice")
    bug = make_bug(alice)
    assert resolve_bug(db, bug["bug_id"])["_id"] == bug["_id"]
    assert resolve_bug(db, str(bug["_id"]))["_id"] == bug["_id"]
    assert resolve_bug(db, "TEST-999") is None
    assert resolve_bug(db, str(ObjectId())) is None


def test_as_object_id():
    oid = ObjectId()
    assert as_object_id(oid) is oid
    assert as_object_id(str(oid)) == oid
    assert as_object_id({"_id": oid}) == oid
    assert as_object_id("PROJ-001") is None
    assert as_object_id(None) is None
    assert as_object_id(42) is None


def test_populate_bug_replaces_references(make_user, make_project, make_bug, db):
    alice = make_user("alice")
    bob = make_user("bob")
    project = make_project(alice)
    bug = make_bug(
        alice, project=project, assigned_to=bob["_id"],
        comments=[{"_id": ObjectId(), "author": bob["_id"], "content": "seen it"}],
    )

    populated = populate_bug(db, bug)
    assert populated["reported_by"]["name"] == "Alice"
    assert populated["assigned_to"]["email"] == "bob@example.com"
    assert populated["project"]["key"] == "ABC"
    assert populated["comments"][0]["author"]["_id"] == bob["_id"]
    # the stored document is untouched
    assert bug["reported_by"] == alice["_id"]


def test_populate_bug_keeps_dangling_references(make_user, make_bug, db):
    alice = make_user("alice")
    ghost = ObjectId()
    bug = make_bug(alice, assigned_to=ghost)
    assert populate_bug(db, bug)["assigned_to"] == ghost
    assert populate_bug(db, None) is None


def test_get_bug_with_population(make_user, make_bug, db):
    alice = make_user("alice")
    bug = make_bug(alice)
    assert get_bug_with_population(db, bug["bug_id"])["reported_by"]["username"] == "alice"
    assert get_bug_with_population(db, "TEST-404") is None
