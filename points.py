"""
Points Ledger
=============
Per-user point balances with a categorized breakdown and an append-only
history, plus a per-bug award list that prevents paying the same user twice
for the same bug and reason.

Every award writes up to two documents (the user and, when tied to a bug, the
bug). Both writes happen inside one transaction, and every precondition
(positive integer points, known reason, existing user and bug, no earlier
award) is checked inside that same transaction before anything is written.
The user update is additionally guarded by the total read at the start of
the call, so a balance that moved underneath us aborts the call instead of
producing a history entry with a stale previous_total.

Invariants:
    points.total == sum(entry.points for entry in points_history)
    points.total == points.earned - points.spent
    points.total >= 0
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from bson import ObjectId
from pymongo.client_session import ClientSession
from pymongo.database import Database

from database import transaction, utcnow
from errors import DuplicateAward, InsufficientPoints, LedgerConflict, NotFound, ValidationFailed
from identifiers import as_object_id
from schemas import AwardReason, PointsAward, PointsHistoryEntry

logger = logging.getLogger(__name__)


def parse_reason(reason: Any) -> AwardReason:
    """Map a caller-supplied reason onto the closed AwardReason set."""
    if isinstance(reason, AwardReason):
        return reason
    try:
        return AwardReason(reason)
    except ValueError:
        allowed = ", ".join(r.value for r in AwardReason)
        raise ValidationFailed(f"Unknown award reason '{reason}'. Allowed: {allowed}")


def _check_points(points: Any) -> int:
    if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
        raise ValidationFailed("Points must be a positive integer")
    return points


def _user_oid(user_id: Any) -> ObjectId:
    oid = as_object_id(user_id)
    if oid is None:
        raise ValidationFailed("Invalid user id")
    return oid


def _balance_guard(user: Dict[str, Any]) -> Dict[str, Any]:
    total = (user.get("points") or {}).get("total")
    if total is None:
        return {"points.total": {"$exists": False}}
    return {"points.total": total}


class PointsLedger:
    """Award, deduct and read points for users stored in `db.user`."""

    def __init__(self, db: Database):
        self.db = db

    # -----------------------------
    # Reads
    # -----------------------------

    def _load_user(self, user_oid: ObjectId, session: Optional[ClientSession]) -> Dict[str, Any]:
        user = self.db.user.find_one({"_id": user_oid}, {"points": 1, "name": 1}, session=session)
        if user is None:
            raise NotFound("User not found")
        return user

    def _already_awarded(self, user_oid: ObjectId, reason: AwardReason, bug_oid: ObjectId, session: Optional[ClientSession]) -> bool:
        return self.db.bug.find_one(
            {"_id": bug_oid, "points_awarded": {"$elemMatch": {"user_id": user_oid, "reason": reason.value}}},
            {"_id": 1},
            session=session,
        ) is not None

    def can_award(self, user_id: Any, reason: Any, bug_id: Any, session: Optional[ClientSession] = None) -> bool:
        """True when no award for (user, bug, reason) has been recorded yet."""
        bug_oid = as_object_id(bug_id)
        if bug_oid is None:
            raise ValidationFailed("Invalid bug id")
        return not self._already_awarded(_user_oid(user_id), parse_reason(reason), bug_oid, session)

    # -----------------------------
    # Awards
    # -----------------------------

    def _validate_award(self, user_id: Any, points: Any, reason: Any, bug_id: Any, session: Optional[ClientSession]) -> Tuple[ObjectId, int, AwardReason, Optional[ObjectId]]:
        reason = parse_reason(reason)
        points = _check_points(points)
        user_oid = _user_oid(user_id)
        self._load_user(user_oid, session)

        bug_oid = None
        if bug_id is not None:
            bug_oid = as_object_id(bug_id)
            if bug_oid is None:
                raise ValidationFailed("Invalid bug id")
            if self.db.bug.find_one({"_id": bug_oid}, {"_id": 1}, session=session) is None:
                raise NotFound("Bug not found")
            if self._already_awarded(user_oid, reason, bug_oid, session):
                logger.warning("Rejected duplicate award: user=%s bug=%s reason=%s", user_oid, bug_oid, reason.value)
                raise DuplicateAward()
        return user_oid, points, reason, bug_oid

    def _apply_award(self, user_oid: ObjectId, points: int, reason: AwardReason, bug_oid: Optional[ObjectId], metadata: Dict[str, Any], session: Optional[ClientSession]) -> Dict[str, Any]:
        user = self._load_user(user_oid, session)
        previous_total = int((user.get("points") or {}).get("total") or 0)
        new_total = previous_total + points
        now = utcnow()

        entry = PointsHistoryEntry(
            points=points,
            reason=reason.value,
            bug_id=bug_oid,
            metadata=metadata,
            awarded_at=now,
            previous_total=previous_total,
            new_total=new_total,
        ).model_dump()

        result = self.db.user.update_one(
            {"_id": user_oid, **_balance_guard(user)},
            {
                "$inc": {
                    "points.total": points,
                    "points.earned": points,
                    f"points.breakdown.{reason.bucket}": points,
                },
                "$push": {"points_history": entry},
                "$set": {"updated_at": now},
            },
            session=session,
        )
        if result.matched_count == 0:
            raise LedgerConflict("Balance changed during the award; nothing was written")

        if bug_oid is not None:
            award = PointsAward(
                user_id=user_oid,
                points=points,
                reason=reason.value,
                awarded_at=now,
                awarded_by=as_object_id(metadata.get("awarded_by")),
            ).model_dump()
            self.db.bug.update_one(
                {"_id": bug_oid},
                {"$push": {"points_awarded": award}, "$set": {"updated_at": now}},
                session=session,
            )

        logger.info("Awarded %d points to %s for %s (total %d -> %d)", points, user_oid, reason.value, previous_total, new_total)
        return {
            "user_id": str(user_oid),
            "points_awarded": points,
            "new_total": new_total,
            "reason": reason.value,
            "bug_id": str(bug_oid) if bug_oid else None,
        }

    def award(self, user_id: Any, points: Any, reason: Any, bug_id: Any = None, metadata: Optional[Dict[str, Any]] = None, session: Optional[ClientSession] = None) -> Dict[str, Any]:
        """
        Add `points` to a user's balance.

        When `bug_id` is given, the award is recorded on the bug and a second
        award for the same (user, bug, reason) fails with DuplicateAward.
        Pass `session` to join a transaction the caller already opened.
        """
        metadata = dict(metadata or {})
        if session is not None:
            plan = self._validate_award(user_id, points, reason, bug_id, session)
            return self._apply_award(*plan, metadata, session)
        with transaction(self.db) as s:
            plan = self._validate_award(user_id, points, reason, bug_id, s)
            return self._apply_award(*plan, metadata, s)

    def bulk_award(self, awards: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Apply several awards as one unit. Every award is validated (including
        duplicates inside the batch) before the first write, so a bad award
        anywhere leaves every balance untouched. A LedgerConflict raised while
        applying is only rolled back when MONGO_TRANSACTIONS is on; without
        transactions the awards applied before it stay written.
        """
        awards = list(awards)
        if not awards:
            raise ValidationFailed("No awards supplied")

        with transaction(self.db) as session:
            plans = []
            seen: Set[Tuple[ObjectId, ObjectId, AwardReason]] = set()
            for index, award in enumerate(awards):
                if not isinstance(award, dict) or not award.get("user_id") or award.get("points") is None or not award.get("reason"):
                    raise ValidationFailed(f"Invalid award data at index {index}", details=_describe(award))
                plan = self._validate_award(award["user_id"], award["points"], award["reason"], award.get("bug_id"), session)
                user_oid, _, reason, bug_oid = plan
                if bug_oid is not None:
                    key = (user_oid, bug_oid, reason)
                    if key in seen:
                        raise DuplicateAward(f"Duplicate award in batch at index {index}")
                    seen.add(key)
                plans.append((plan, dict(award.get("metadata") or {})))

            results = [self._apply_award(*plan, metadata, session) for plan, metadata in plans]

        return {"awards_processed": len(results), "results": results}

    # -----------------------------
    # Deductions
    # -----------------------------

    def deduct(self, user_id: Any, points: Any, reason: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        points = _check_points(points)
        if not reason or not str(reason).strip():
            raise ValidationFailed("A reason is required for a deduction")
        reason = str(reason).strip()
        user_oid = _user_oid(user_id)

        with transaction(self.db) as session:
            user = self._load_user(user_oid, session)
            previous_total = int((user.get("points") or {}).get("total") or 0)
            if points > previous_total:
                raise InsufficientPoints(details={"requested": points, "available": previous_total})

            new_total = previous_total - points
            now = utcnow()
            entry = PointsHistoryEntry(
                points=-points,
                reason=reason,
                metadata=dict(metadata or {}),
                awarded_at=now,
                previous_total=previous_total,
                new_total=new_total,
            ).model_dump()
            result = self.db.user.update_one(
                {"_id": user_oid, **_balance_guard(user)},
                {
                    "$inc": {"points.total": -points, "points.spent": points},
                    "$push": {"points_history": entry},
                    "$set": {"updated_at": now},
                },
                session=session,
            )
            if result.matched_count == 0:
                raise LedgerConflict("Balance changed during the deduction; nothing was written")

        logger.info("Deducted %d points from %s for %s (total %d -> %d)", points, user_oid, reason, previous_total, new_total)
        return {
            "user_id": str(user_oid),
            "points_deducted": points,
            "new_total": new_total,
            "reason": reason,
        }

    # -----------------------------
    # History
    # -----------------------------

    def history(self, user_id: Any, limit: int = 20, skip: int = 0) -> Dict[str, Any]:
        """Newest-first page of the user's history plus the current total."""
        if limit < 1 or skip < 0:
            raise ValidationFailed("limit must be >= 1 and skip >= 0")
        user = self.db.user.find_one({"_id": _user_oid(user_id)}, {"points": 1, "points_history": 1})
        if user is None:
            raise NotFound("User not found")

        entries: List[Dict[str, Any]] = list(reversed(user.get("points_history") or []))
        return {
            "current_total": int((user.get("points") or {}).get("total") or 0),
            "history": entries[skip:skip + limit],
            "total_records": len(entries),
        }

    def audit(self, user_id: Any) -> Dict[str, Any]:
        """Compare the stored total with the sum of the history deltas."""
        user = self.db.user.find_one({"_id": _user_oid(user_id)}, {"points": 1, "points_history": 1})
        if user is None:
            raise NotFound("User not found")
        total = int((user.get("points") or {}).get("total") or 0)
        history_sum = sum(int(e.get("points") or 0) for e in user.get("points_history") or [])
        return {"total": total, "history_sum": history_sum, "consistent": total == history_sum}


def _describe(award: Any) -> Any:
    if isinstance(award, dict):
        return {k: str(v) for k, v in award.items()}
    return str(award)
