"""
Bugs

CRUD over the `bug` collection. Bugs are addressed by ObjectId or by their
human readable code (PROJ-001). Reporting, resolving and commenting pay out
points through the ledger in the same transaction as the bug write.
"""
import logging
import re
from typing import Any, Dict, List, Literal, Optional, Tuple

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from pymongo.client_session import ClientSession
from pymongo.database import Database

import config
from auth import get_current_user
from bug_ids import next_bug_id
from database import create_document, get_db, transaction, utcnow
from errors import Forbidden, NotFound, ValidationFailed
from identifiers import populate_bug, resolve_bug, resolve_user
from points import PointsLedger
from projects import can_view_project, get_project_or_404
from schemas import (
    BUG_CATEGORIES, BUG_STATUSES, PRIORITIES, RESOLUTIONS, SEVERITIES,
    Activity, AwardReason, Bug, Comment, Environment, ReproductionStep,
)
from standardizer import standardize_bug, standardize_pagination, success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bugs", tags=["Bugs"])

_STATUS_STATS = {
    "open": "open_bugs",
    "in-progress": "in_progress_bugs",
    "resolved": "resolved_bugs",
    "closed": "closed_bugs",
}


# -----------------------------
# Helpers shared with the GitHub routes
# -----------------------------
def get_bug_or_404(db: Database, identifier: str, session: Optional[ClientSession] = None) -> Dict[str, Any]:
    bug = resolve_bug(db, identifier, session=session)
    if bug is None:
        raise NotFound("Bug not found")
    return bug


def bug_payload(db: Database, bug_oid: ObjectId) -> Dict[str, Any]:
    return standardize_bug(populate_bug(db, db.bug.find_one({"_id": bug_oid})))


def move_project_stats(db: Database, bug: Dict[str, Any], old_status: Optional[str], new_status: Optional[str], session: Optional[ClientSession] = None) -> None:
    """Shift the project's per-status counters after a status change."""
    project_id = bug.get("project")
    if project_id is None or old_status == new_status:
        return
    inc: Dict[str, int] = {}
    if old_status in _STATUS_STATS:
        inc[f"stats.{_STATUS_STATS[old_status]}"] = -1
    if new_status in _STATUS_STATS:
        inc[f"stats.{_STATUS_STATS[new_status]}"] = 1
    if inc:
        db.project.update_one({"_id": project_id}, {"$inc": inc}, session=session)


def status_transition(bug: Dict[str, Any], new_status: str, actor_id: ObjectId, resolver_id: Optional[ObjectId] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Compute the `$set` fields and the activity entry for moving a bug to
    `new_status`. Resolving stamps the resolver (defaults to the actor) and
    resolved_at; closing stamps closed_at.
    """
    old_status = bug.get("status") or "open"
    now = utcnow()
    sets: Dict[str, Any] = {"status": new_status, "updated_at": now}
    if new_status == "resolved" and old_status != "resolved":
        sets["resolved_by"] = resolver_id or actor_id
        sets["resolved_at"] = now
    if new_status == "closed" and old_status != "closed":
        sets["closed_at"] = now
    activity = Activity(
        user=actor_id, action="status_changed", field="status",
        old_value=old_status, new_value=new_status, timestamp=now,
    ).model_dump()
    return sets, activity


def award_resolution(db: Database, bug_oid: ObjectId, resolver_id: Optional[ObjectId], session: Optional[ClientSession] = None) -> Optional[Dict[str, Any]]:
    """Pay the resolution award once per (resolver, bug); a repeat is skipped."""
    if resolver_id is None:
        return None
    ledger = PointsLedger(db)
    if not ledger.can_award(resolver_id, AwardReason.BUG_RESOLVED, bug_oid, session=session):
        logger.info("Resolution award for bug %s already paid to %s", bug_oid, resolver_id)
        return None
    return ledger.award(
        resolver_id, config.POINTS_BUG_RESOLVED, AwardReason.BUG_RESOLVED, bug_oid,
        metadata={"source": "resolution"}, session=session,
    )


def _check_choice(value: Optional[str], choices, label: str) -> None:
    if value is not None and value not in choices:
        raise ValidationFailed(f"Invalid {label} '{value}'. Allowed: {', '.join(c for c in choices if c)}")


def _steps(steps: Optional[List[str]]) -> List[Dict[str, Any]]:
    cleaned = [s.strip() for s in steps or [] if s and s.strip()]
    return [ReproductionStep(step=s, order=i + 1).model_dump() for i, s in enumerate(cleaned)]


def _assignee_id(db: Database, identifier: Optional[str]) -> Optional[ObjectId]:
    if not identifier:
        return None
    assignee = resolve_user(db, identifier)
    if assignee is None:
        raise NotFound("Assignee not found")
    return assignee["_id"]


# -----------------------------
# Payloads
# -----------------------------
class CreateBug(BaseModel):
    title: str
    description: str
    project_id: Optional[str] = None
    assigned_to: Optional[str] = None
    priority: str = "medium"
    severity: str = "minor"
    category: str = "bug"
    environment: Optional[Environment] = None
    steps_to_reproduce: List[str] = Field(default_factory=list)
    expected_result: Optional[str] = Field(None, max_length=500)
    actual_result: Optional[str] = Field(None, max_length=500)
    tags: List[str] = Field(default_factory=list)
    bounty_points: int = Field(0, ge=0)


class UpdateBug(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    severity: Optional[str] = None
    category: Optional[str] = None
    resolution: Optional[str] = None
    assigned_to: Optional[str] = None
    environment: Optional[Environment] = None
    steps_to_reproduce: Optional[List[str]] = None
    expected_result: Optional[str] = Field(None, max_length=500)
    actual_result: Optional[str] = Field(None, max_length=500)
    tags: Optional[List[str]] = None
    bounty_points: Optional[int] = Field(None, ge=0)


class CreateComment(BaseModel):
    content: str
    is_resolution_comment: bool = False


class BugAward(BaseModel):
    user_id: str
    points: int
    comment: Optional[str] = None


def _check_text(title: Optional[str], description: Optional[str]) -> None:
    if title is not None and not 3 <= len(title.strip()) <= 200:
        raise ValidationFailed("Title must be between 3 and 200 characters")
    if description is not None and not 10 <= len(description.strip()) <= 2000:
        raise ValidationFailed("Description must be between 10 and 2000 characters")


# -----------------------------
# Routes
# -----------------------------
@router.get("")
def list_bugs(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    project: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: Literal["created_at", "updated_at", "priority", "status", "title"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    user: Dict[str, Any] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    _check_choice(status, BUG_STATUSES, "status")
    _check_choice(priority, PRIORITIES, "priority")

    filt: Dict[str, Any] = {}
    if status:
        filt["status"] = status
    if priority:
        filt["priority"] = priority
    if project:
        filt["project"] = get_project_or_404(db, project)["_id"]
    if search and search.strip():
        pattern = re.escape(search.strip())
        filt["$or"] = [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]

    total = db.bug.count_documents(filt)
    docs = (
        db.bug.find(filt)
        .sort(sort_by, 1 if sort_order == "asc" else -1)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    bugs = [standardize_bug(populate_bug(db, d)) for d in docs]
    return success_response(
        {"bugs": bugs, "pagination": standardize_pagination(page, total, limit)},
        "Bugs retrieved successfully",
    )


@router.post("", status_code=201)
def create_bug(payload: CreateBug, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    _check_text(payload.title, payload.description)
    _check_choice(payload.priority, PRIORITIES, "priority")
    _check_choice(payload.severity, SEVERITIES, "severity")
    _check_choice(payload.category, BUG_CATEGORIES, "category")

    project = None
    if payload.project_id:
        project = get_project_or_404(db, payload.project_id)
        if not can_view_project(project, user):
            raise Forbidden("You are not a member of this project")
    assignee = _assignee_id(db, payload.assigned_to)

    # reserved outside the transaction; an aborted creation leaves a gap
    code = next_bug_id(db, project["key"] if project else None)

    bug = Bug(
        title=payload.title.strip(),
        description=payload.description.strip(),
        bug_id=code,
        project=project["_id"] if project else None,
        reported_by=user["_id"],
        assigned_to=assignee,
        priority=payload.priority,
        severity=payload.severity,
        category=payload.category,
        environment=payload.environment,
        expected_result=payload.expected_result,
        actual_result=payload.actual_result,
        tags=[t.strip() for t in payload.tags if t.strip()],
        bounty_points=payload.bounty_points,
        activity=[Activity(user=user["_id"], action="created")],
    ).model_dump(by_alias=True)
    bug["steps_to_reproduce"] = _steps(payload.steps_to_reproduce)

    with transaction(db) as session:
        bug_oid = ObjectId(create_document("bug", bug, database=db, session=session))
        if project is not None:
            db.project.update_one(
                {"_id": project["_id"]},
                {"$inc": {"stats.total_bugs": 1, "stats.open_bugs": 1}},
                session=session,
            )
        PointsLedger(db).award(
            user["_id"], config.POINTS_BUG_REPORTED, AwardReason.BUG_REPORTED, bug_oid,
            metadata={"source": "report"}, session=session,
        )

    logger.info("Bug %s created by %s", code, user["_id"])
    return success_response(bug_payload(db, bug_oid), "Bug created successfully")


@router.get("/{identifier}")
def get_bug(identifier: str, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    bug = get_bug_or_404(db, identifier)
    return success_response(standardize_bug(populate_bug(db, bug)), "Bug retrieved successfully")


@router.put("/{identifier}")
def update_bug(identifier: str, payload: UpdateBug, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True)
    _check_text(changes.get("title"), changes.get("description"))
    _check_choice(changes.get("status"), BUG_STATUSES, "status")
    _check_choice(changes.get("priority"), PRIORITIES, "priority")
    _check_choice(changes.get("severity"), SEVERITIES, "severity")
    _check_choice(changes.get("category"), BUG_CATEGORIES, "category")
    _check_choice(changes.get("resolution"), RESOLUTIONS, "resolution")

    with transaction(db) as session:
        bug = get_bug_or_404(db, identifier, session=session)
        now = utcnow()
        sets: Dict[str, Any] = {}
        activities: List[Dict[str, Any]] = []

        for field in ("title", "description", "priority", "severity", "category", "resolution", "expected_result", "actual_result"):
            if field in changes and changes[field] is not None:
                value = changes[field].strip() if field in ("title", "description") else changes[field]
                if value != bug.get(field):
                    sets[field] = value
                    activities.append(Activity(
                        user=user["_id"], action="updated", field=field,
                        old_value=bug.get(field), new_value=value, timestamp=now,
                    ).model_dump())
        if changes.get("tags") is not None:
            sets["tags"] = [t.strip() for t in changes["tags"] if t.strip()]
        if changes.get("bounty_points") is not None:
            sets["bounty_points"] = changes["bounty_points"]
        if changes.get("environment") is not None:
            sets["environment"] = changes["environment"]
        if changes.get("steps_to_reproduce") is not None:
            sets["steps_to_reproduce"] = _steps(changes["steps_to_reproduce"])
        if "assigned_to" in changes:
            assignee = _assignee_id(db, changes["assigned_to"])
            if assignee != bug.get("assigned_to"):
                sets["assigned_to"] = assignee
                activities.append(Activity(
                    user=user["_id"], action="assigned", field="assigned_to",
                    old_value=bug.get("assigned_to"), new_value=assignee, timestamp=now,
                ).model_dump())

        old_status = bug.get("status") or "open"
        new_status = changes.get("status") or old_status
        if new_status != old_status:
            status_sets, activity = status_transition(bug, new_status, user["_id"])
            sets.update(status_sets)
            activities.append(activity)

        if not sets:
            return success_response(standardize_bug(populate_bug(db, bug, session=session)), "No changes applied")

        sets["updated_at"] = now
        update: Dict[str, Any] = {"$set": sets}
        if activities:
            update["$push"] = {"activity": {"$each": activities}}
        db.bug.update_one({"_id": bug["_id"]}, update, session=session)

        if new_status != old_status:
            move_project_stats(db, bug, old_status, new_status, session=session)
            if new_status == "resolved":
                award_resolution(db, bug["_id"], sets.get("resolved_by"), session=session)

    logger.info("Bug %s updated by %s (%s)", bug.get("bug_id"), user["_id"], ", ".join(sorted(sets)))
    return success_response(bug_payload(db, bug["_id"]), "Bug updated successfully")


@router.delete("/{identifier}")
def delete_bug(identifier: str, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    bug = get_bug_or_404(db, identifier)
    if bug.get("reported_by") != user["_id"] and user.get("role") != "admin":
        raise Forbidden("Only the reporter or an admin can delete this bug")

    with transaction(db) as session:
        db.bug.delete_one({"_id": bug["_id"]}, session=session)
        if bug.get("project") is not None:
            inc = {"stats.total_bugs": -1}
            status_stat = _STATUS_STATS.get(bug.get("status") or "open")
            if status_stat:
                inc[f"stats.{status_stat}"] = -1
            db.project.update_one({"_id": bug["project"]}, {"$inc": inc}, session=session)

    logger.info("Bug %s deleted by %s", bug.get("bug_id"), user["_id"])
    return success_response({"id": str(bug["_id"]), "bug_id": bug.get("bug_id")}, "Bug deleted successfully")


@router.post("/{identifier}/comments", status_code=201)
def add_comment(identifier: str, payload: CreateComment, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    content = payload.content.strip()
    if not content:
        raise ValidationFailed("Comment content is required")
    if len(content) > 1000:
        raise ValidationFailed("Comment cannot exceed 1000 characters")

    ledger = PointsLedger(db)
    with transaction(db) as session:
        bug = get_bug_or_404(db, identifier, session=session)
        eligible = ledger.can_award(user["_id"], AwardReason.COMMENT_HELPFUL, bug["_id"], session=session)
        comment = Comment(
            author=user["_id"],
            content=content,
            is_resolution_comment=payload.is_resolution_comment,
            points_awarded=config.POINTS_COMMENT if eligible else 0,
        ).model_dump(by_alias=True)
        activity = Activity(user=user["_id"], action="commented").model_dump()
        db.bug.update_one(
            {"_id": bug["_id"]},
            {"$push": {"comments": comment, "activity": activity}, "$set": {"updated_at": utcnow()}},
            session=session,
        )
        if eligible:
            ledger.award(
                user["_id"], config.POINTS_COMMENT, AwardReason.COMMENT_HELPFUL, bug["_id"],
                metadata={"comment_id": str(comment["_id"])}, session=session,
            )

    return success_response(bug_payload(db, bug["_id"]), "Comment added successfully")


@router.post("/{identifier}/award-points")
def award_bug_points(identifier: str, payload: BugAward, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    """
    The reporter of a resolved bug pays points to whoever helped fix it.
    An optional note is stored as a resolution comment carrying the points.
    """
    if not 1 <= payload.points <= config.MAX_AWARD_POINTS:
        raise ValidationFailed(f"Points must be between 1 and {config.MAX_AWARD_POINTS}")
    note = (payload.comment or "").strip()
    if payload.comment is not None and not 1 <= len(note) <= 500:
        raise ValidationFailed("Comment must be between 1 and 500 characters")

    ledger = PointsLedger(db)
    with transaction(db) as session:
        bug = get_bug_or_404(db, identifier, session=session)
        if bug.get("reported_by") != user["_id"]:
            raise Forbidden("Only the bug reporter can award points")
        if bug.get("status") not in ("resolved", "closed"):
            raise ValidationFailed("Points can only be awarded for resolved bugs")
        target = resolve_user(db, payload.user_id, session=session)
        if target is None:
            raise NotFound("User to award points not found")
        if target["_id"] == user["_id"]:
            raise ValidationFailed("You cannot award points to yourself")

        result = ledger.award(
            target["_id"], payload.points, AwardReason.CONTRIBUTION, bug["_id"],
            metadata={"awarded_by": str(user["_id"]), "source": "reporter_award"}, session=session,
        )
        pushes: Dict[str, Any] = {
            "activity": Activity(
                user=user["_id"], action="points_awarded", field="points",
                new_value={"user": str(target["_id"]), "points": payload.points},
            ).model_dump(),
        }
        if note:
            pushes["comments"] = Comment(
                author=user["_id"], content=note, is_resolution_comment=True, points_awarded=payload.points,
            ).model_dump(by_alias=True)
        db.bug.update_one({"_id": bug["_id"]}, {"$push": pushes, "$set": {"updated_at": utcnow()}}, session=session)

    logger.info("Reporter %s awarded %d points to %s on bug %s", user["_id"], payload.points, target["_id"], bug.get("bug_id"))
    return success_response({**result, "bug": bug_payload(db, bug["_id"])}, "Points awarded successfully")
