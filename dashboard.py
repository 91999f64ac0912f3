"""
Dashboard

Aggregates are computed in Python over the fetched documents rather than in
the database, which keeps the numbers identical across MongoDB versions.
"""
import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query
from pymongo.database import Database

from auth import get_current_user
from database import get_db, utcnow
from identifiers import populate_bug
from schemas import BUG_STATUSES, PRIORITIES
from standardizer import standardize_bug, standardize_leaderboard_entry, standardize_project, success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dashboard", tags=["Dashboard"])

TREND_WEEKS = 8


def _aware(dt: Any) -> Any:
    if isinstance(dt, datetime) and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def week_key(dt: datetime) -> str:
    iso = dt.isocalendar()
    return f"{iso[0]}-W{iso[1]:02d}"


def _breakdown(counts: Counter, labels, total: int) -> List[Dict[str, Any]]:
    return [
        {
            "label": label,
            "count": counts.get(label, 0),
            "percentage": round(counts.get(label, 0) / total * 100, 1) if total else 0.0,
        }
        for label in labels
    ]


def weekly_trends(bugs: List[Dict[str, Any]], now: datetime, weeks: int = TREND_WEEKS) -> List[Dict[str, Any]]:
    """Bugs created and resolved per ISO week over the last `weeks` weeks, oldest first."""
    created: Dict[str, int] = defaultdict(int)
    resolved: Dict[str, int] = defaultdict(int)
    for b in bugs:
        c = _aware(b.get("created_at"))
        if isinstance(c, datetime):
            created[week_key(c)] += 1
        r = _aware(b.get("resolved_at"))
        if isinstance(r, datetime):
            resolved[week_key(r)] += 1

    keys = [week_key(now - timedelta(weeks=i)) for i in range(weeks - 1, -1, -1)]
    return [{"week": k, "created": created.get(k, 0), "resolved": resolved.get(k, 0)} for k in keys]


@router.get("")
def overview(user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    bugs = list(db.bug.find({}, {"status": 1, "priority": 1, "created_at": 1, "resolved_at": 1}))
    total = len(bugs)
    by_status = Counter(b.get("status") or "open" for b in bugs)
    by_priority = Counter(b.get("priority") or "medium" for b in bugs)
    done = by_status.get("resolved", 0) + by_status.get("closed", 0)

    statistics = {
        "total_bugs": total,
        "open_bugs": by_status.get("open", 0),
        "in_progress_bugs": by_status.get("in-progress", 0),
        "resolved_bugs": by_status.get("resolved", 0),
        "closed_bugs": by_status.get("closed", 0),
        "total_projects": db.project.count_documents({}),
        "active_projects": db.project.count_documents({"status": "active"}),
        "active_users": db.user.count_documents({"is_active": {"$ne": False}}),
        "resolution_rate": round(done / total * 100, 1) if total else 0.0,
    }

    recent_bugs = [standardize_bug(populate_bug(db, b)) for b in db.bug.find().sort("created_at", -1).limit(10)]
    recent_projects = [standardize_project(p) for p in db.project.find().sort("created_at", -1).limit(5)]

    return success_response(
        {
            "statistics": statistics,
            "recent_bugs": recent_bugs,
            "recent_projects": recent_projects,
            "charts": {
                "by_priority": _breakdown(by_priority, PRIORITIES, total),
                "by_status": _breakdown(by_status, BUG_STATUSES, total),
            },
            "trends": weekly_trends(bugs, utcnow()),
        },
        "Dashboard data retrieved successfully",
    )


@router.get("/leaderboard")
def top_contributors(
    limit: int = Query(5, ge=1, le=50),
    user: Dict[str, Any] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    docs = (
        db.user.find({"is_active": {"$ne": False}, "points.total": {"$gt": 0}}, {"points_history": 0, "google_id": 0})
        .sort([("points.total", -1), ("created_at", 1)])
        .limit(limit)
    )
    entries = [standardize_leaderboard_entry(u, i + 1) for i, u in enumerate(docs)]
    return success_response({"leaderboard": entries}, "Leaderboard retrieved successfully")
