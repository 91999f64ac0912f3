from unittest.mock import MagicMock, patch

import pytest
from bson import ObjectId

import config
from database import transaction
from errors import DuplicateAward
from points import PointsLedger


def _mock_db(user_oid, bug_oid):
    """A database whose client hands out a mock session and whose user/bug lookups always succeed."""
    db = MagicMock()
    db.user.find_one.return_value = {"_id": user_oid, "name": "Alice", "points": {"total": 0}}
    db.bug.find_one.side_effect = lambda filt, *args, **kwargs: None if "points_awarded" in filt else {"_id": bug_oid}
    db.user.update_one.return_value.matched_count = 1
    return db


def _session_parts(db):
    session = db.client.start_session.return_value.__enter__.return_value
    txn = session.start_transaction.return_value
    return session, txn


def test_transaction_yields_none_when_disabled():
    db = MagicMock()
    with patch.object(config, "MONGO_TRANSACTIONS", False):
        with transaction(db) as session:
            assert session is None
    db.client.start_session.assert_not_called()


def test_transaction_enters_session_and_transaction():
    db = MagicMock()
    expected, txn = _session_parts(db)
    with patch.object(config, "MONGO_TRANSACTIONS", True):
        with transaction(db) as session:
            assert session is expected

    db.client.start_session.assert_called_once_with()
    expected.start_transaction.assert_called_once_with()
    txn.__enter__.assert_called_once()
    assert txn.__exit__.call_args[0][0] is None


def test_award_passes_session_to_every_read_and_write():
    user_oid, bug_oid = ObjectId(), ObjectId()
    db = _mock_db(user_oid, bug_oid)
    session, txn = _session_parts(db)

    with patch.object(config, "MONGO_TRANSACTIONS", True):
        result = PointsLedger(db).award(user_oid, 10, "bug_resolved", bug_oid)

    assert result["new_total"] == 10
    db.user.update_one.assert_called_once()
    db.bug.update_one.assert_called_once()
    calls = (
        db.user.find_one.call_args_list + db.bug.find_one.call_args_list
        + db.user.update_one.call_args_list + db.bug.update_one.call_args_list
    )
    assert all(call.kwargs.get("session") is session for call in calls)
    assert txn.__exit__.call_args[0][0] is None


def test_bulk_award_aborts_transaction_on_duplicate():
    user_oid, bug_oid = ObjectId(), ObjectId()
    db = _mock_db(user_oid, bug_oid)
    session, txn = _session_parts(db)
    award = {"user_id": user_oid, "points": 5, "reason": "contribution", "bug_id": bug_oid}

    with patch.object(config, "MONGO_TRANSACTIONS", True):
        with pytest.raises(DuplicateAward):
            PointsLedger(db).bulk_award([award, dict(award)])

    # the exception reached the transaction block, which aborts it
    assert txn.__exit__.call_args[0][0] is DuplicateAward
    db.user.update_one.assert_not_called()
    db.bug.update_one.assert_not_called()
    assert all(call.kwargs.get("session") is session for call in db.user.find_one.call_args_list)
