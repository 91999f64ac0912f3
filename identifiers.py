"""
Identifier resolution for users and bugs.

Callers hand us opaque strings. A user is addressed either by its MongoDB
ObjectId (24 hex chars) or by its external auth id (28 alphanumeric chars).
A bug is addressed either by ObjectId or by its human readable code
(PROJ-001). Each string is classified once into NativeId or ExternalId and
the lookup follows from the variant:

    NativeId    -> _id lookup, then the external field on a miss
    ExternalId  -> external field only

A well-formed identifier that matches nothing resolves to None; only
malformed input raises InvalidIdentifier.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union

from bson import ObjectId
from pymongo.client_session import ClientSession
from pymongo.database import Database

from errors import InvalidIdentifier

logger = logging.getLogger(__name__)

OBJECT_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")
EXTERNAL_USER_ID_RE = re.compile(r"^[a-zA-Z0-9]{28}$")
BUG_CODE_RE = re.compile(r"^[A-Z]+[A-Z0-9]*-[0-9]+$")


@dataclass(frozen=True)
class NativeId:
    value: str

    @property
    def object_id(self) -> ObjectId:
        return ObjectId(self.value)


@dataclass(frozen=True)
class ExternalId:
    value: str


Identifier = Union[NativeId, ExternalId]


def _clean(identifier: Any, label: str) -> str:
    if identifier is None:
        raise InvalidIdentifier(f"{label} identifier is required")
    text = str(identifier).strip()
    if not text:
        raise InvalidIdentifier(f"{label} identifier is required")
    return text


def classify_user_identifier(identifier: Any) -> Identifier:
    text = _clean(identifier, "User")
    if OBJECT_ID_RE.match(text):
        return NativeId(text)
    if EXTERNAL_USER_ID_RE.match(text):
        return ExternalId(text)
    raise InvalidIdentifier("Invalid user identifier format")


def classify_bug_identifier(identifier: Any) -> Identifier:
    text = _clean(identifier, "Bug")
    if OBJECT_ID_RE.match(text):
        return NativeId(text)
    if BUG_CODE_RE.match(text):
        return ExternalId(text)
    raise InvalidIdentifier("Invalid bug identifier format")


def _resolve(collection, ident: Identifier, external_field: str, session: Optional[ClientSession]) -> Optional[Dict[str, Any]]:
    if isinstance(ident, NativeId):
        doc = collection.find_one({"_id": ident.object_id}, session=session)
        if doc is not None:
            return doc
    return collection.find_one({external_field: ident.value}, session=session)


def resolve_user(db: Database, identifier: Any, session: Optional[ClientSession] = None) -> Optional[Dict[str, Any]]:
    """Find a user by ObjectId or external auth id."""
    ident = classify_user_identifier(identifier)
    return _resolve(db.user, ident, "google_id", session)


def resolve_bug(db: Database, identifier: Any, session: Optional[ClientSession] = None) -> Optional[Dict[str, Any]]:
    """Find a bug by ObjectId or human readable code."""
    ident = classify_bug_identifier(identifier)
    doc = _resolve(db.bug, ident, "bug_id", session)
    if doc is None:
        logger.debug("Bug %r not found (%s)", ident.value, type(ident).__name__)
    return doc


def as_object_id(value: Any) -> Optional[ObjectId]:
    """Coerce a stored reference or id string to ObjectId; None when it is not one."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, dict):
        return as_object_id(value.get("_id"))
    if isinstance(value, str) and OBJECT_ID_RE.match(value):
        return ObjectId(value)
    return None


# -----------------------------
# Population
# -----------------------------

_USER_FIELDS = {"name": 1, "email": 1, "username": 1, "avatar": 1, "points.total": 1, "github_profile": 1}
_PROJECT_FIELDS = {"name": 1, "key": 1, "description": 1}


def _collect_user_refs(bug: Dict[str, Any]) -> List[ObjectId]:
    refs: List[Any] = [bug.get("reported_by"), bug.get("assigned_to"), bug.get("resolved_by")]
    refs.extend(c.get("author") for c in bug.get("comments") or [])
    refs.extend(f.get("user_id") for f in bug.get("forks") or [])
    refs.extend((pr.get("author") or {}).get("user_id") for pr in bug.get("pull_requests") or [])
    ids = [as_object_id(r) for r in refs]
    return list({i for i in ids if i is not None})


def load_users(db: Database, ids: Iterable[ObjectId], session: Optional[ClientSession] = None) -> Dict[ObjectId, Dict[str, Any]]:
    ids = list(ids)
    if not ids:
        return {}
    return {u["_id"]: u for u in db.user.find({"_id": {"$in": ids}}, _USER_FIELDS, session=session)}


def populate_bug(db: Database, bug: Optional[Dict[str, Any]], session: Optional[ClientSession] = None) -> Optional[Dict[str, Any]]:
    """
    Return a copy of `bug` with user and project references replaced by the
    referenced documents. Dangling references stay as bare ids.
    """
    if bug is None:
        return None
    users = load_users(db, _collect_user_refs(bug), session=session)

    def user(ref):
        oid = as_object_id(ref)
        return users.get(oid, ref) if oid is not None else ref

    out = dict(bug)
    project_id = as_object_id(bug.get("project"))
    if project_id is not None:
        out["project"] = db.project.find_one({"_id": project_id}, _PROJECT_FIELDS, session=session) or bug.get("project")
    for field in ("reported_by", "assigned_to", "resolved_by"):
        out[field] = user(bug.get(field))
    out["comments"] = [{**c, "author": user(c.get("author"))} for c in bug.get("comments") or []]
    out["forks"] = [{**f, "user_id": user(f.get("user_id"))} for f in bug.get("forks") or []]
    out["pull_requests"] = [
        {**pr, "author": {**(pr.get("author") or {}), "user_id": user((pr.get("author") or {}).get("user_id"))}}
        for pr in bug.get("pull_requests") or []
    ]
    return out


def get_bug_with_population(db: Database, identifier: Any, session: Optional[ClientSession] = None) -> Optional[Dict[str, Any]]:
    return populate_bug(db, resolve_bug(db, identifier, session=session), session=session)
