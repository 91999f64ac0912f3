"""
Users

Profile, onboarding and the HTTP surface of the points ledger. The static
paths are registered before `/{identifier}` so they are never captured by it.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from pymongo.database import Database

import config
from auth import get_current_user, require_roles, requires_onboarding
from database import get_db, get_documents, utcnow
from errors import Forbidden, NotFound, UsernameTaken, ValidationFailed
from identifiers import resolve_bug, resolve_user
from points import PointsLedger
from schemas import INDUSTRIES, USER_ROLES
from standardizer import (
    standardize_history_entry, standardize_leaderboard_entry, standardize_pagination,
    standardize_user_profile, standardize_user_reference, standardize_user_stats, success_response,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["Users"])

USERNAME_RE = re.compile(r"^\w{3,30}$", re.ASCII)
PHONE_RE = re.compile(r"^\d{10}$")


def _check_username(username: Optional[str]) -> str:
    username = (username or "").strip()
    if not USERNAME_RE.match(username):
        raise ValidationFailed("Username must be 3-30 characters and contain only letters, numbers and underscores")
    return username


def _username_taken(db: Database, username: str, exclude_id=None) -> bool:
    filt: Dict[str, Any] = {"username": re.compile(f"^{re.escape(username)}$", re.IGNORECASE)}
    if exclude_id is not None:
        filt["_id"] = {"$ne": exclude_id}
    return db.user.find_one(filt, {"_id": 1}) is not None


def _get_user_or_404(db: Database, identifier: str) -> Dict[str, Any]:
    user = resolve_user(db, identifier)
    if user is None:
        raise NotFound("User not found")
    return user


# -----------------------------
# Payloads
# -----------------------------
class UsernamePayload(BaseModel):
    username: Optional[str] = None


class OnboardingPayload(BaseModel):
    username: str
    phone_number: str
    industry: str


class UpdateProfile(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    avatar: Optional[str] = None
    department: Optional[str] = None
    phone_number: Optional[str] = None
    industry: Optional[str] = None
    github_username: Optional[str] = None


class AwardPayload(BaseModel):
    user_id: str
    points: int
    reason: str
    bug_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BulkAwardPayload(BaseModel):
    awards: List[AwardPayload]


class DeductPayload(BaseModel):
    user_id: str
    points: int
    reason: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RolePayload(BaseModel):
    role: str


def _check_award_points(points: int) -> None:
    if not 1 <= points <= config.MAX_AWARD_POINTS:
        raise ValidationFailed(f"Points must be between 1 and {config.MAX_AWARD_POINTS}")


# -----------------------------
# Onboarding & profile
# -----------------------------
@router.post("/check-username")
def check_username(payload: UsernamePayload, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    username = _check_username(payload.username)
    available = not _username_taken(db, username, exclude_id=user["_id"])
    return success_response(
        {"username": username, "available": available},
        "Username is available" if available else "Username is already taken",
    )


@router.post("/complete-onboarding")
def complete_onboarding(payload: OnboardingPayload, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    username = _check_username(payload.username)
    phone = re.sub(r"[\s\-()]", "", payload.phone_number or "")
    if not PHONE_RE.match(phone):
        raise ValidationFailed("Phone number must be exactly 10 digits")
    if payload.industry not in INDUSTRIES:
        raise ValidationFailed(f"Invalid industry. Allowed: {', '.join(INDUSTRIES)}")
    if _username_taken(db, username, exclude_id=user["_id"]):
        raise UsernameTaken()

    db.user.update_one(
        {"_id": user["_id"]},
        {"$set": {
            "username": username,
            "phone_number": phone,
            "industry": payload.industry,
            "onboarding_completed": True,
            "updated_at": utcnow(),
        }},
    )
    updated = db.user.find_one({"_id": user["_id"]}, {"points_history": 0})
    logger.info("User %s completed onboarding as %s", user["_id"], username)
    return success_response(
        {**standardize_user_profile(updated), "requires_onboarding": requires_onboarding(updated)},
        "Onboarding completed successfully",
    )


@router.put("/update-profile")
def update_profile(payload: UpdateProfile, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    changes = payload.model_dump(exclude_none=True)
    sets: Dict[str, Any] = {}
    if "name" in changes:
        if not changes["name"].strip():
            raise ValidationFailed("Name cannot be empty")
        sets["name"] = changes["name"].strip()
    for field in ("avatar", "department"):
        if field in changes:
            sets[field] = changes[field].strip()
    if "phone_number" in changes:
        phone = re.sub(r"[\s\-()]", "", changes["phone_number"])
        if not PHONE_RE.match(phone):
            raise ValidationFailed("Phone number must be exactly 10 digits")
        sets["phone_number"] = phone
    if "industry" in changes:
        if changes["industry"] not in INDUSTRIES:
            raise ValidationFailed(f"Invalid industry. Allowed: {', '.join(INDUSTRIES)}")
        sets["industry"] = changes["industry"]
    if "github_username" in changes:
        gh = changes["github_username"].strip()
        sets["github_profile.username"] = gh or None
        sets["github_profile.url"] = f"https://github.com/{gh}" if gh else None

    if sets:
        sets["updated_at"] = utcnow()
        db.user.update_one({"_id": user["_id"]}, {"$set": sets})
    updated = db.user.find_one({"_id": user["_id"]}, {"points_history": 0})
    return success_response(standardize_user_profile(updated), "Profile updated successfully")


# -----------------------------
# Listing, leaderboard & search
# -----------------------------
@router.get("")
def list_users(user: Dict[str, Any] = Depends(require_roles("admin", "manager")), db: Database = Depends(get_db)):
    """Active users, newest first. Admins and managers only."""
    docs = db.user.find({"is_active": {"$ne": False}}, {"google_id": 0, "points_history": 0}).sort("created_at", -1)
    users = [standardize_user_profile(u) for u in docs]
    return success_response({"users": users, "count": len(users)}, "Users retrieved successfully")


@router.get("/leaderboard")
def leaderboard(
    limit: int = Query(50, ge=1, le=100),
    page: int = Query(1, ge=1),
    user: Dict[str, Any] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    filt = {"onboarding_completed": True, "is_active": {"$ne": False}}
    projection = {"points_history": 0, "google_id": 0}
    total_users = db.user.count_documents(filt)
    docs = (
        db.user.find(filt, projection)
        .sort([("points.total", -1), ("created_at", 1)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    offset = (page - 1) * limit
    entries = [standardize_leaderboard_entry(u, offset + i + 1) for i, u in enumerate(docs)]

    totals = [int((u.get("points") or {}).get("total") or 0) for u in db.user.find(filt, {"points.total": 1})]
    total_points = sum(totals)
    return success_response(
        {
            "leaderboard": entries,
            "stats": {
                "total_users": total_users,
                "total_points": total_points,
                "average_points": round(total_points / total_users, 2) if total_users else 0,
            },
            "pagination": standardize_pagination(page, total_users, limit),
        },
        "Leaderboard retrieved successfully",
    )


@router.get("/search")
def search_users(
    q: str = Query(..., min_length=2),
    limit: int = Query(10, ge=1, le=50),
    user: Dict[str, Any] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    pattern = re.escape(q.strip())
    filt = {
        "is_active": {"$ne": False},
        "$or": [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"email": {"$regex": pattern, "$options": "i"}},
            {"username": {"$regex": pattern, "$options": "i"}},
        ],
    }
    docs = get_documents("user", filt, limit=limit, database=db)
    return success_response({"users": [standardize_user_reference(d) for d in docs]}, "Users retrieved successfully")


# -----------------------------
# Points
# -----------------------------
@router.post("/award-points")
def award_points(payload: AwardPayload, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    _check_award_points(payload.points)
    target = _get_user_or_404(db, payload.user_id)

    bug = None
    if payload.bug_id:
        bug = resolve_bug(db, payload.bug_id)
        if bug is None:
            raise NotFound("Bug not found")

    if user.get("role") not in ("admin", "manager"):
        if bug is None:
            raise ValidationFailed("A bug_id is required to award points")
        if bug.get("reported_by") != user["_id"]:
            raise Forbidden("Only the bug reporter can award points for this bug")
        if bug.get("status") not in ("resolved", "closed"):
            raise ValidationFailed("Points can only be awarded for resolved bugs")
        if target["_id"] == user["_id"]:
            raise ValidationFailed("You cannot award points to yourself")

    metadata = {**payload.metadata, "awarded_by": str(user["_id"])}
    result = PointsLedger(db).award(
        target["_id"], payload.points, payload.reason,
        bug_id=bug["_id"] if bug else None, metadata=metadata,
    )
    return success_response(result, "Points awarded successfully")


@router.post("/award-points/bulk")
def bulk_award_points(payload: BulkAwardPayload, user: Dict[str, Any] = Depends(require_roles("admin")), db: Database = Depends(get_db)):
    awards = []
    for award in payload.awards:
        _check_award_points(award.points)
        target = _get_user_or_404(db, award.user_id)
        bug_oid = None
        if award.bug_id:
            bug = resolve_bug(db, award.bug_id)
            if bug is None:
                raise NotFound("Bug not found")
            bug_oid = bug["_id"]
        awards.append({
            "user_id": target["_id"],
            "points": award.points,
            "reason": award.reason,
            "bug_id": bug_oid,
            "metadata": {**award.metadata, "awarded_by": str(user["_id"])},
        })
    result = PointsLedger(db).bulk_award(awards)
    return success_response(result, f"Processed {result['awards_processed']} awards")


@router.post("/deduct-points")
def deduct_points(payload: DeductPayload, user: Dict[str, Any] = Depends(require_roles("admin")), db: Database = Depends(get_db)):
    target = _get_user_or_404(db, payload.user_id)
    metadata = {**payload.metadata, "deducted_by": str(user["_id"])}
    result = PointsLedger(db).deduct(target["_id"], payload.points, payload.reason, metadata=metadata)
    return success_response(result, "Points deducted successfully")


@router.get("/points/history")
def points_history(
    limit: int = Query(20, ge=1, le=100),
    skip: int = Query(0, ge=0),
    user: Dict[str, Any] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    page = PointsLedger(db).history(user["_id"], limit=limit, skip=skip)
    return success_response(
        {
            "current_total": page["current_total"],
            "history": [standardize_history_entry(e) for e in page["history"]],
            "total_records": page["total_records"],
            "has_more": skip + limit < page["total_records"],
        },
        "Points history retrieved successfully",
    )


# -----------------------------
# Lookup by identifier
# -----------------------------
@router.get("/{identifier}")
def get_user(identifier: str, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    target = _get_user_or_404(db, identifier)
    return success_response(standardize_user_profile(target), "User retrieved successfully")


@router.get("/{identifier}/stats")
def get_user_stats(identifier: str, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    target = _get_user_or_404(db, identifier)
    uid = target["_id"]
    stats = {
        "total_points": (target.get("points") or {}).get("total"),
        "bugs_reported": db.bug.count_documents({"reported_by": uid}),
        "bugs_resolved": db.bug.count_documents({"resolved_by": uid}),
        "pull_requests": (target.get("statistics") or {}).get("pull_requests_submitted"),
        "projects_created": db.project.count_documents({"owner": uid}),
        "active_bugs": db.bug.count_documents({"assigned_to": uid, "status": {"$in": ["open", "in-progress"]}}),
    }
    return success_response(standardize_user_stats(stats), "User statistics retrieved successfully")


@router.put("/{identifier}/role")
def update_role(identifier: str, payload: RolePayload, user: Dict[str, Any] = Depends(require_roles("admin")), db: Database = Depends(get_db)):
    if payload.role not in USER_ROLES:
        raise ValidationFailed(f"Invalid role. Allowed: {', '.join(USER_ROLES)}")
    target = _get_user_or_404(db, identifier)
    if target["_id"] == user["_id"]:
        raise ValidationFailed("You cannot change your own role")

    db.user.update_one({"_id": target["_id"]}, {"$set": {"role": payload.role, "updated_at": utcnow()}})
    logger.info("Role of %s changed to %s by %s", target["_id"], payload.role, user["_id"])
    updated = db.user.find_one({"_id": target["_id"]}, {"points_history": 0})
    return success_response(standardize_user_profile(updated), "User role updated successfully")
