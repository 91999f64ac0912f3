from datetime import timedelta

import jwt
import pytest
from bson import ObjectId

import config
from auth import decode_token, issue_token, requires_onboarding
from database import utcnow
from errors import Unauthorized


def test_first_google_sign_in_creates_user(client, db):
    res = client.post("/api/auth/google", json={"id_token": "valid:google-sub-1:new@example.com"})
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    data = body["data"]
    assert data["is_new_user"] is True
    assert data["requires_onboarding"] is True
    assert data["user"]["email"] == "new@example.com"
    assert data["user"]["points"]["total"] == 0
    assert "google_id" not in data["user"]

    stored = db.user.find_one({"google_id": "google-sub-1"})
    assert stored["onboarding_completed"] is False
    assert stored["points"]["total"] == 0
    assert decode_token(data["token"])["user_id"] == str(stored["_id"])


def test_returning_user_is_not_new(client, db):
    client.post("/api/auth/google", json={"id_token": "valid:google-sub-2:back@example.com"})
    res = client.post("/api/auth/google", json={"id_token": "valid:google-sub-2:back@example.com"})
    assert res.json()["data"]["is_new_user"] is False
    assert db.user.count_documents({"google_id": "google-sub-2"}) == 1


def test_sign_in_requires_token(client):
    res = client.post("/api/auth/google", json={})
    assert res.status_code == 400
    assert res.json()["message"] == "No ID token provided"


def test_sign_in_with_rejected_token(client):
    res = client.post("/api/auth/google", json={"id_token": "forged"})
    assert res.status_code == 401
    assert res.json()["success"] is False


def test_me_and_refresh(client, make_user, headers):
    alice = make_user("alice")
    res = client.get("/api/auth/me", headers=headers(alice))
    assert res.status_code == 200
    assert res.json()["data"]["username"] == "alice"
    assert res.json()["data"]["requires_onboarding"] is False

    res = client.post("/api/auth/refresh", headers=headers(alice))
    assert decode_token(res.json()["data"]["token"])["user_id"] == str(alice["_id"])


def test_missing_token(client):
    res = client.get("/api/auth/me")
    assert res.status_code == 401
    assert res.json()["message"] == "Access denied. No token provided."


def test_invalid_and_expired_tokens(client, make_user):
    alice = make_user("alice")
    res = client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"})
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid token."

    expired = jwt.encode(
        {"user_id": str(alice["_id"]), "exp": utcnow() - timedelta(minutes=1)},
        config.JWT_SECRET, algorithm=config.JWT_ALGORITHM,
    )
    res = client.get("/api/auth/me", headers={"Authorization": f"Bearer {expired}"})
    assert res.status_code == 401
    assert res.json()["message"] == "Token expired."


def test_unknown_and_deactivated_users(client, make_user, headers):
    res = client.get("/api/auth/me", headers={"Authorization": f"Bearer {issue_token(ObjectId())}"})
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid token. User not found."

    inactive = make_user("carol", is_active=False)
    res = client.get("/api/auth/me", headers=headers(inactive))
    assert res.status_code == 401
    assert res.json()["message"] == "Account is deactivated."


def test_decode_token_rejects_other_secret():
    token = jwt.encode({"user_id": "x"}, "another-secret", algorithm="HS256")
    with pytest.raises(Unauthorized, match="Invalid token."):
        decode_token(token)


@pytest.mark.parametrize("user,expected", [
    ({"username": "a", "onboarding_completed": True}, False),
    ({"username": "a", "onboarding_completed": False}, True),
    ({"username": None, "onboarding_completed": True}, True),
    ({}, True),
])
def test_requires_onboarding(user, expected):
    assert requires_onboarding(user) is expected
