"""
Projects

Any authenticated user may create a project and becomes its owner. A project
is visible to its owner, its members and admins. The owner (or an admin)
manages the member list.
"""
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import get_current_user
from bug_ids import PROJECT_KEY_RE, derive_project_key
from database import create_document, get_db, utcnow
from errors import DuplicateProjectKey, Forbidden, NotFound, ValidationFailed
from identifiers import as_object_id, load_users, resolve_user
from schemas import PRIORITIES, PROJECT_CATEGORIES, PROJECT_MEMBER_ROLES, Project, ProjectMember, Repository
from standardizer import standardize_project, success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects", tags=["Projects"])


# -----------------------------
# Access helpers
# -----------------------------
def is_member(project: Dict[str, Any], user_id: ObjectId) -> bool:
    if project.get("owner") == user_id:
        return True
    return any(m.get("user") == user_id for m in project.get("members") or [])


def can_view_project(project: Dict[str, Any], user: Dict[str, Any]) -> bool:
    return user.get("role") == "admin" or is_member(project, user["_id"])


def can_manage_project(project: Dict[str, Any], user: Dict[str, Any]) -> bool:
    return user.get("role") == "admin" or project.get("owner") == user["_id"]


def get_project_or_404(db: Database, project_id: str) -> Dict[str, Any]:
    oid = as_object_id(project_id)
    if oid is None:
        raise ValidationFailed("Invalid project ID")
    project = db.project.find_one({"_id": oid})
    if project is None:
        raise NotFound("Project not found")
    return project


def _populated(db: Database, project: Dict[str, Any]) -> Dict[str, Any]:
    ids = [project.get("owner")] + [m.get("user") for m in project.get("members") or []]
    users = load_users(db, {i for i in ids if isinstance(i, ObjectId)})
    out = dict(project)
    out["owner"] = users.get(project.get("owner"), project.get("owner"))
    out["members"] = [{**m, "user": users.get(m.get("user"), m.get("user"))} for m in project.get("members") or []]
    return out


# -----------------------------
# Payloads
# -----------------------------
class CreateProject(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field("", max_length=500)
    key: Optional[str] = None
    priority: str = "medium"
    category: str = "web"
    repository_url: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class AddMember(BaseModel):
    user_id: str
    role: str = "developer"


# -----------------------------
# Routes
# -----------------------------
@router.get("")
def list_projects(user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    filt: Dict[str, Any] = {}
    if user.get("role") != "admin":
        filt = {"$or": [{"owner": user["_id"]}, {"members.user": user["_id"]}]}
    docs = db.project.find(filt).sort("created_at", -1).limit(100)
    projects = [standardize_project(_populated(db, d)) for d in docs]
    return success_response({"projects": projects}, "Projects retrieved successfully")


@router.post("", status_code=201)
def create_project(payload: CreateProject, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    name = payload.name.strip()
    if not name:
        raise ValidationFailed("Project name is required")
    if payload.priority not in PRIORITIES:
        raise ValidationFailed(f"Invalid priority '{payload.priority}'")
    if payload.category not in PROJECT_CATEGORIES:
        raise ValidationFailed(f"Invalid category '{payload.category}'")

    key = (payload.key or "").strip().upper() or derive_project_key(name)
    if not PROJECT_KEY_RE.match(key):
        raise ValidationFailed("Project key must be 2-10 uppercase letters or digits and start with a letter")

    project = Project(
        name=name,
        description=payload.description.strip(),
        key=key,
        priority=payload.priority,
        category=payload.category,
        owner=user["_id"],
        repository=Repository(url=payload.repository_url) if payload.repository_url else None,
        tags=[t.strip() for t in payload.tags if t.strip()],
    )

    if db.project.find_one({"key": key}, {"_id": 1}) is not None:
        raise DuplicateProjectKey(f"Project key '{key}' already exists")
    try:
        project_id = create_document("project", project, database=db)
    except DuplicateKeyError:
        raise DuplicateProjectKey(f"Project key '{key}' already exists")
    project = db.project.find_one({"_id": ObjectId(project_id)})

    logger.info("Project %s (%s) created by %s", key, project["_id"], user["_id"])
    return success_response(standardize_project(_populated(db, project)), "Project created successfully")


@router.get("/{project_id}")
def get_project(project_id: str, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    project = get_project_or_404(db, project_id)
    if not can_view_project(project, user):
        raise Forbidden("You are not a member of this project")
    return success_response(standardize_project(_populated(db, project)), "Project retrieved successfully")


@router.post("/{project_id}/members")
def add_member(project_id: str, payload: AddMember, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    project = get_project_or_404(db, project_id)
    if not can_manage_project(project, user):
        raise Forbidden("Only the project owner or an admin can manage members")
    if payload.role not in PROJECT_MEMBER_ROLES:
        raise ValidationFailed(f"Invalid member role '{payload.role}'")

    member = resolve_user(db, payload.user_id)
    if member is None:
        raise NotFound("User not found")

    if not is_member(project, member["_id"]):
        entry = ProjectMember(user=member["_id"], role=payload.role).model_dump()
        db.project.update_one(
            {"_id": project["_id"], "members.user": {"$ne": member["_id"]}},
            {"$push": {"members": entry}, "$set": {"updated_at": utcnow()}},
        )
    project = db.project.find_one({"_id": project["_id"]})
    return success_response(standardize_project(_populated(db, project)), "Member added successfully")


@router.delete("/{project_id}/members/{member_id}")
def remove_member(project_id: str, member_id: str, user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    project = get_project_or_404(db, project_id)
    if not can_manage_project(project, user):
        raise Forbidden("Only the project owner or an admin can manage members")

    member = resolve_user(db, member_id)
    if member is None:
        raise NotFound("User not found")
    if project.get("owner") == member["_id"]:
        raise ValidationFailed("The project owner cannot be removed")

    db.project.update_one(
        {"_id": project["_id"]},
        {"$pull": {"members": {"user": member["_id"]}}, "$set": {"updated_at": utcnow()}},
    )
    project = db.project.find_one({"_id": project["_id"]})
    return success_response(standardize_project(_populated(db, project)), "Member removed successfully")
