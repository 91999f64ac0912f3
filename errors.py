"""
Error taxonomy shared by every route.

Each error carries the HTTP status it maps to; main.py turns them into the
error envelope. `details` ends up in the envelope's `error` field.
"""
from typing import Any, Optional


class BugTrackerError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Any = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code


class ValidationFailed(BugTrackerError):
    status_code = 400


class InvalidIdentifier(ValidationFailed):
    pass


class NotFound(BugTrackerError):
    status_code = 404


class Unauthorized(BugTrackerError):
    status_code = 401


class Forbidden(BugTrackerError):
    status_code = 403


class DuplicateState(BugTrackerError):
    status_code = 400


class DuplicateAward(DuplicateState):
    def __init__(self, message: str = "Points already awarded to this user for this bug", details: Any = None):
        super().__init__(message, details)


class UsernameTaken(DuplicateState):
    def __init__(self, message: str = "Username is already taken", details: Any = None):
        super().__init__(message, details)


class DuplicateProjectKey(DuplicateState):
    pass


class InsufficientPoints(BugTrackerError):
    status_code = 400

    def __init__(self, message: str = "Insufficient points for deduction", details: Any = None):
        super().__init__(message, details)


class LedgerConflict(BugTrackerError):
    """The balance changed between read and write; the call was aborted."""
    status_code = 409


class DatabaseUnavailable(BugTrackerError):
    status_code = 503

    def __init__(self, message: str = "Database not available", details: Any = None):
        super().__init__(message, details)
