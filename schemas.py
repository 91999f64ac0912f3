"""
Database Schemas for the bug tracker

Each Pydantic model describes a MongoDB collection document. The collection
name is the lowercase of the class name. References to other documents are
stored as ObjectIds; embedded lists are plain sub-documents.
"""
from __future__ import annotations
from enum import Enum
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, EmailStr


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)


# -----------------------------
# Enumerations
# -----------------------------

USER_ROLES = ("admin", "manager", "developer", "tester")
PROJECT_STATUSES = ("active", "inactive", "completed", "archived")
PROJECT_MEMBER_ROLES = ("developer", "tester", "manager", "viewer")
PROJECT_CATEGORIES = ("web", "mobile", "api", "desktop", "other")
PRIORITIES = ("low", "medium", "high", "critical")
SEVERITIES = ("trivial", "minor", "major", "critical", "blocker")
BUG_CATEGORIES = ("bug", "feature", "improvement", "task", "story")
BUG_STATUSES = ("open", "in-progress", "testing", "resolved", "closed", "rejected")
RESOLUTIONS = ("", "fixed", "wont-fix", "duplicate", "invalid", "works-as-designed")
PULL_REQUEST_STATUSES = ("open", "merged", "closed", "draft")

INDUSTRIES = (
    "Technology", "Healthcare", "Finance", "Education", "Manufacturing", "Retail",
    "Consulting", "Real Estate", "Media & Entertainment", "Non-Profit", "Government", "Other",
)


class AwardReason(str, Enum):
    """Closed set of reasons a point award can carry. Each maps to one breakdown bucket."""
    BUG_REPORTED = "bug_reported"
    BUG_RESOLVED = "bug_resolved"
    COMMENT_HELPFUL = "comment_helpful"
    CONTRIBUTION = "contribution"

    @property
    def bucket(self) -> str:
        return _BREAKDOWN_BUCKETS[self]


_BREAKDOWN_BUCKETS = {
    AwardReason.BUG_REPORTED: "bugs_reported",
    AwardReason.BUG_RESOLVED: "bugs_resolved",
    AwardReason.COMMENT_HELPFUL: "comments",
    AwardReason.CONTRIBUTION: "contributions",
}


# -----------------------------
# User
# -----------------------------

class PointsBreakdown(Document):
    bugs_reported: int = 0
    bugs_resolved: int = 0
    comments: int = 0
    contributions: int = 0


class Points(Document):
    total: int = 0
    earned: int = 0
    spent: int = 0
    breakdown: PointsBreakdown = Field(default_factory=PointsBreakdown)


class PointsHistoryEntry(Document):
    points: int = Field(..., description="Signed delta; negative for deductions")
    reason: str
    bug_id: Optional[ObjectId] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    awarded_at: datetime = Field(default_factory=_now)
    previous_total: int
    new_total: int


class GithubProfile(Document):
    username: Optional[str] = None
    url: Optional[str] = None


class UserStatistics(Document):
    pull_requests_submitted: int = 0
    pull_requests_merged: int = 0


class User(Document):
    name: str = Field(..., max_length=100, description="Full name")
    email: EmailStr = Field(..., description="Email address")
    google_id: str = Field(..., description="External auth provider subject")
    avatar: str = ""
    role: str = Field("developer", description="Role: admin, manager, developer, tester")
    department: str = "Development"
    is_active: bool = True
    username: Optional[str] = None
    phone_number: Optional[str] = None
    industry: Optional[str] = None
    onboarding_completed: bool = False
    last_login_at: datetime = Field(default_factory=_now)
    points: Points = Field(default_factory=Points)
    points_history: List[PointsHistoryEntry] = Field(default_factory=list)
    github_profile: GithubProfile = Field(default_factory=GithubProfile)
    statistics: UserStatistics = Field(default_factory=UserStatistics)


# -----------------------------
# Project
# -----------------------------

class ProjectMember(Document):
    user: ObjectId
    role: str = "developer"
    joined_at: datetime = Field(default_factory=_now)


class ProjectStats(Document):
    total_bugs: int = 0
    open_bugs: int = 0
    in_progress_bugs: int = 0
    resolved_bugs: int = 0
    closed_bugs: int = 0


class Repository(Document):
    url: Optional[str] = None
    branch: str = "main"


class Project(Document):
    name: str = Field(..., max_length=100, description="Project display name")
    description: str = Field("", max_length=500)
    key: str = Field(..., description="Short unique key, e.g. BUGS")
    status: str = "active"
    priority: str = "medium"
    start_date: datetime = Field(default_factory=_now)
    end_date: Optional[datetime] = None
    owner: ObjectId
    members: List[ProjectMember] = Field(default_factory=list)
    stats: ProjectStats = Field(default_factory=ProjectStats)
    repository: Optional[Repository] = None
    tags: List[str] = Field(default_factory=list)
    category: str = "web"


# -----------------------------
# Bug
# -----------------------------

class Environment(Document):
    os: Optional[str] = None
    browser: Optional[str] = None
    version: Optional[str] = None
    device: Optional[str] = None


class ReproductionStep(Document):
    step: str
    order: int


class Comment(Document):
    id: ObjectId = Field(default_factory=ObjectId, serialization_alias="_id")
    author: ObjectId
    content: str = Field(..., max_length=1000)
    is_resolution_comment: bool = False
    points_awarded: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Activity(Document):
    user: Optional[ObjectId] = None
    action: str
    field: Optional[str] = None
    old_value: Any = None
    new_value: Any = None
    timestamp: datetime = Field(default_factory=_now)


class GithubRepo(Document):
    url: str
    owner: str
    name: str
    is_public: bool = True


class Fork(Document):
    github_username: str
    user_id: ObjectId
    fork_url: str
    created_at: datetime = Field(default_factory=_now)


class PullRequestAuthor(Document):
    github_username: str
    user_id: Optional[ObjectId] = None


class PullRequest(Document):
    number: int
    url: str
    title: str
    author: PullRequestAuthor
    status: str = "open"
    created_at: datetime = Field(default_factory=_now)
    merged_at: Optional[datetime] = None


class PointsAward(Document):
    user_id: ObjectId
    points: int
    reason: str
    awarded_at: datetime = Field(default_factory=_now)
    awarded_by: Optional[ObjectId] = None


class Bug(Document):
    title: str = Field(..., max_length=200)
    description: str = Field(..., max_length=2000)
    bug_id: str = Field(..., description="Human readable id, e.g. PROJ-001")
    project: Optional[ObjectId] = None
    reported_by: ObjectId
    assigned_to: Optional[ObjectId] = None
    resolved_by: Optional[ObjectId] = None
    priority: str = Field("medium", description="low, medium, high, critical")
    severity: str = Field("minor", description="trivial, minor, major, critical, blocker")
    category: str = "bug"
    status: str = Field("open", description="open, in-progress, testing, resolved, closed, rejected")
    resolution: str = ""
    environment: Optional[Environment] = None
    steps_to_reproduce: List[ReproductionStep] = Field(default_factory=list)
    expected_result: Optional[str] = Field(None, max_length=500)
    actual_result: Optional[str] = Field(None, max_length=500)
    tags: List[str] = Field(default_factory=list)
    bounty_points: int = 0
    comments: List[Comment] = Field(default_factory=list)
    activity: List[Activity] = Field(default_factory=list)
    github_repo: Optional[GithubRepo] = None
    forks: List[Fork] = Field(default_factory=list)
    pull_requests: List[PullRequest] = Field(default_factory=list)
    resolution_pull_request: Optional[Dict[str, Any]] = None
    points_awarded: List[PointsAward] = Field(default_factory=list)
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    due_date: Optional[datetime] = None

