"""
Bug ID generation

Bug codes look like PROJ-001. The sequence per project key lives in the
`counter` collection (`_id` = "bug_<KEY>") and is advanced with a single
find_one_and_update($inc, upsert), which MongoDB applies atomically, so two
concurrent creations under the same key always receive different numbers.
"""
import re
from typing import Optional

from pymongo import ReturnDocument
from pymongo.database import Database

DEFAULT_KEY = "DEFAULT"
PROJECT_KEY_RE = re.compile(r"^[A-Z][A-Z0-9]{1,9}$")


def _counter_id(project_key: Optional[str]) -> str:
    return f"bug_{project_key or DEFAULT_KEY}"


def format_bug_id(project_key: str, seq: int) -> str:
    return f"{project_key}-{seq:03d}"


def next_bug_id(db: Database, project_key: Optional[str] = None) -> str:
    """Reserve the next code for `project_key`. Numbers are never reused."""
    key = project_key or DEFAULT_KEY
    counter = db.counter.find_one_and_update(
        {"_id": _counter_id(key)},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return format_bug_id(key, int(counter["seq"]))


def current_bug_sequence(db: Database, project_key: Optional[str] = None) -> int:
    counter = db.counter.find_one({"_id": _counter_id(project_key)})
    return int(counter["seq"]) if counter else 0


def reset_bug_counter(db: Database, project_key: Optional[str] = None) -> None:
    db.counter.update_one({"_id": _counter_id(project_key)}, {"$set": {"seq": 0}}, upsert=True)


def derive_project_key(name: str) -> str:
    """Build a key from a project name: first two characters of each word, uppercased."""
    cleaned = re.sub(r"[^a-zA-Z0-9\s]", "", name or "")
    key = "".join(word[:2] for word in cleaned.split()).upper()[:6]
    if not key or not key[0].isalpha():
        key = ("P" + key)[:6]
    return key.ljust(2, "X")
