"""
Auth gateway

POST /api/auth/google exchanges a Google ID token for a session token issued
by this service. Every other route depends on `get_current_user`, which reads
the bearer session token and loads the user.

A user is created the first time a Google subject is seen, with onboarding
still pending. Onboarding is complete only when the user has a username AND
the onboarding flag is set.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import jwt
from bson import ObjectId
from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from pymongo.database import Database

import config
from database import get_db, utcnow
from errors import Forbidden, Unauthorized, ValidationFailed
from schemas import User
from standardizer import standardize_user_profile, success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])

_bearer = HTTPBearer(auto_error=False)


# -----------------------------
# Identity assertion
# -----------------------------
class GoogleIdentityVerifier:
    """Verifies Google-issued ID tokens against Google's published signing keys."""

    def __init__(self, client_id: Optional[str] = None, certs_url: Optional[str] = None):
        self.client_id = client_id or config.GOOGLE_CLIENT_ID
        self._jwks = jwt.PyJWKClient(certs_url or config.GOOGLE_CERTS_URL)

    def verify(self, id_token: str) -> Dict[str, Any]:
        if not self.client_id:
            raise Unauthorized("Google sign-in is not configured")
        try:
            signing_key = self._jwks.get_signing_key_from_jwt(id_token)
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self.client_id,
                options={"verify_exp": True},
            )
        except jwt.ExpiredSignatureError:
            raise Unauthorized("Token expired. Please sign in again.")
        except jwt.InvalidAudienceError:
            raise Unauthorized("Token audience mismatch. Please check configuration.")
        except jwt.PyJWTError as exc:
            raise Unauthorized("Invalid Google token", details=str(exc) if config.is_development() else None)

        if claims.get("iss") not in config.GOOGLE_ISSUERS:
            raise Unauthorized("Invalid Google token issuer")
        if not claims.get("sub") or not claims.get("email"):
            raise Unauthorized("Google token is missing subject or email")
        return claims


_verifier: Optional[GoogleIdentityVerifier] = None


def get_identity_verifier() -> GoogleIdentityVerifier:
    global _verifier
    if _verifier is None:
        _verifier = GoogleIdentityVerifier()
    return _verifier


# -----------------------------
# Session tokens
# -----------------------------
def issue_token(user_id: Any) -> str:
    now = utcnow()
    payload = {
        "user_id": str(user_id),
        "iat": now,
        "exp": now + timedelta(days=config.JWT_EXPIRE_DAYS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired.")
    except jwt.PyJWTError:
        raise Unauthorized("Invalid token.")


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Access denied. No token provided.")

    payload = decode_token(credentials.credentials)
    user_id = payload.get("user_id")
    if not user_id or not ObjectId.is_valid(user_id):
        raise Unauthorized("Invalid token.")

    user = db.user.find_one({"_id": ObjectId(user_id)}, {"points_history": 0})
    if user is None:
        raise Unauthorized("Invalid token. User not found.")
    if not user.get("is_active", True):
        raise Unauthorized("Account is deactivated.")
    return user


def require_roles(*roles: str):
    """Dependency factory admitting only users whose role is in `roles`."""
    def dependency(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user.get("role") not in roles:
            raise Forbidden(f"Access denied. Required roles: {', '.join(roles)}")
        return user
    return dependency


def requires_onboarding(user: Dict[str, Any]) -> bool:
    return not (user.get("username") and user.get("onboarding_completed"))


# -----------------------------
# Routes
# -----------------------------
class GoogleAuthPayload(BaseModel):
    id_token: Optional[str] = Field(None, description="Google ID token")


@router.post("/google")
def google_auth(
    payload: GoogleAuthPayload,
    db: Database = Depends(get_db),
    verifier: GoogleIdentityVerifier = Depends(get_identity_verifier),
):
    if not payload.id_token:
        raise ValidationFailed("No ID token provided")

    claims = verifier.verify(payload.id_token)
    google_id = claims["sub"]

    user = db.user.find_one({"google_id": google_id})
    is_new_user = user is None
    if is_new_user:
        doc = User(
            name=claims.get("name") or claims["email"].split("@")[0],
            email=claims["email"].lower(),
            google_id=google_id,
            avatar=claims.get("picture") or "",
        ).model_dump()
        now = utcnow()
        doc.update({"created_at": now, "updated_at": now})
        doc["_id"] = db.user.insert_one(doc).inserted_id
        user = doc
        logger.info("Created user %s for %s", user["_id"], user["email"])
    else:
        now = utcnow()
        db.user.update_one({"_id": user["_id"]}, {"$set": {"last_login_at": now}})
        user["last_login_at"] = now

    if not user.get("is_active", True):
        raise Unauthorized("Account is deactivated.")

    return success_response(
        {
            "token": issue_token(user["_id"]),
            "is_new_user": is_new_user,
            "requires_onboarding": requires_onboarding(user),
            "user": standardize_user_profile(user),
        },
        "Authentication successful",
    )


@router.get("/me")
def get_me(user: Dict[str, Any] = Depends(get_current_user)):
    return success_response(
        {**standardize_user_profile(user), "requires_onboarding": requires_onboarding(user)},
        "User retrieved successfully",
    )


@router.post("/refresh")
def refresh_token(user: Dict[str, Any] = Depends(get_current_user)):
    return success_response({"token": issue_token(user["_id"])}, "Token refreshed")
