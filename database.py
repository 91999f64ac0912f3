"""
Database access for the bug tracker

Collections are named after the lowercase entity: user, project, bug, counter.
`db` is None when DATABASE_URL is not configured; routes receive the database
through the `get_db` dependency so tests can swap in their own.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.client_session import ClientSession
from pymongo.database import Database

import config
from errors import DatabaseUnavailable

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URL:
    try:
        client = MongoClient(config.DATABASE_URL)
        db = client[config.DATABASE_NAME]
    except Exception as e:
        logger.error("Could not create MongoDB client: %s", e)
        client = None
        db = None


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise DatabaseUnavailable("Database not available. Check DATABASE_URL.")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def transaction(database: Database) -> Iterator[Optional[ClientSession]]:
    """
    Run a block inside a MongoDB transaction.

    Yields the session to pass as `session=` to every collection call. The
    transaction commits when the block exits cleanly and aborts when it raises.
    With MONGO_TRANSACTIONS off, yields None and writes go straight through.
    """
    if not config.MONGO_TRANSACTIONS:
        yield None
        return
    with database.client.start_session() as session:
        with session.start_transaction():
            yield session


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None, session: Optional[ClientSession] = None) -> str:
    """Insert a single document with timestamps"""
    target = database if database is not None else get_db()

    if isinstance(data, BaseModel):
        data_dict = data.model_dump(by_alias=True)
    else:
        data_dict = data.copy()

    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now

    result = target[collection_name].insert_one(data_dict, session=session)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None, database: Optional[Database] = None) -> List[Dict[str, Any]]:
    """Get documents from collection"""
    target = database if database is not None else get_db()

    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database) -> None:
    database.user.create_index([("email", ASCENDING)], unique=True)
    database.user.create_index([("google_id", ASCENDING)], unique=True)
    database.user.create_index([("role", ASCENDING)])
    database.project.create_index([("key", ASCENDING)], unique=True)
    database.project.create_index([("owner", ASCENDING)])
    database.project.create_index([("members.user", ASCENDING)])
    database.bug.create_index([("bug_id", ASCENDING)], unique=True)
    database.bug.create_index([("project", ASCENDING), ("status", ASCENDING)])
    database.bug.create_index([("reported_by", ASCENDING)])
    database.bug.create_index([("created_at", DESCENDING)])
    logger.info("MongoDB indexes ensured on %s", database.name)
