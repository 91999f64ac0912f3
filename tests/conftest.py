import os
import uuid

os.environ.pop("DATABASE_URL", None)
os.environ["MONGO_TRANSACTIONS"] = "false"
os.environ["LOG_TO_FILE"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id"

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import auth
import database
from auth import issue_token
from database import create_document, ensure_indexes
from errors import Unauthorized
from main import app
from schemas import Bug, Project, User


class StubVerifier:
    """Accepts "valid:<sub>:<email>" and rejects anything else."""

    def verify(self, id_token):
        parts = id_token.split(":")
        if len(parts) != 3 or parts[0] != "valid":
            raise Unauthorized("Invalid Google token")
        return {
            "sub": parts[1],
            "email": parts[2],
            "name": "Stub User",
            "picture": "https://example.com/avatar.png",
        }


@pytest.fixture
def db():
    database_ = mongomock.MongoClient()[f"bugtracker_test_{uuid.uuid4().hex[:8]}"]
    ensure_indexes(database_)
    return database_


@pytest.fixture
def client(db):
    app.dependency_overrides[database.get_db] = lambda: db
    app.dependency_overrides[auth.get_identity_verifier] = lambda: StubVerifier()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(name="alice", role="developer", onboarded=True, google_id=None, **fields):
        user = User(
            name=name.title(),
            email=f"{name}@example.com",
            google_id=google_id or uuid.uuid4().hex[:28],
            role=role,
            username=name if onboarded else None,
            onboarding_completed=onboarded,
        ).model_dump()
        user.update(fields)
        user_id = create_document("user", user, database=db)
        return db.user.find_one({"_id": ObjectId(user_id)})
    return _make


@pytest.fixture
def make_project(db):
    def _make(owner, key="ABC", name="Alpha Beta", members=()):
        project = Project(name=name, key=key, owner=owner["_id"]).model_dump()
        project["members"] = [{"user": m["_id"], "role": "developer"} for m in members]
        create_document("project", project, database=db)
        return db.project.find_one({"key": key})
    return _make


@pytest.fixture
def make_bug(db):
    counter = {"n": 0}

    def _make(reporter, status="open", project=None, **fields):
        counter["n"] += 1
        bug = Bug(
            title=f"Bug number {counter['n']}",
            description="Something is broken in a reproducible way",
            bug_id=f"{project['key'] if project else 'TEST'}-{counter['n']:03d}",
            project=project["_id"] if project else None,
            reported_by=reporter["_id"],
            status=status,
        ).model_dump(by_alias=True)
        bug.update(fields)
        create_document("bug", bug, database=db)
        return db.bug.find_one({"bug_id": bug["bug_id"]})
    return _make


def auth_headers(user):
    return {"Authorization": f"Bearer {issue_token(user['_id'])}"}


@pytest.fixture
def headers():
    return auth_headers
