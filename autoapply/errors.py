"""Exception taxonomy for the engine.

Trigger-level errors (``IncompleteProfile``, ``QuotaExceeded``,
``RunAlreadyInProgress``) abort a single trigger before any submission.
Candidate-level errors are caught by the submitter and turned into a
``failed`` record. Only ``StorageError`` halts a run in progress.
"""
from __future__ import annotations

from datetime import datetime


class AutoApplyError(Exception):
    pass


class UnknownUser(AutoApplyError):
    def __init__(self, user_id: int) -> None:
        super().__init__(f"Unknown user {user_id}")
        self.user_id = user_id


class IncompleteProfile(AutoApplyError):
    def __init__(self, missing_fields: list[str]) -> None:
        super().__init__(f"Profile incomplete, missing: {', '.join(missing_fields)}")
        self.missing_fields = missing_fields


class QuotaExceeded(AutoApplyError):
    def __init__(self, retry_after: float, reset_at: datetime) -> None:
        super().__init__(f"Quota exhausted, resets at {reset_at.isoformat()}")
        self.retry_after = retry_after
        self.reset_at = reset_at


class RunAlreadyInProgress(AutoApplyError):
    def __init__(self, user_id: int) -> None:
        super().__init__(f"A run is already in progress for user {user_id}")
        self.user_id = user_id


class OracleUnavailable(AutoApplyError):
    pass


class SubmissionTransientError(AutoApplyError):
    """Network or timeout failure; safe to retry."""


class SubmissionRejected(AutoApplyError):
    """The channel refused the application; never retried."""


class CircuitOpen(AutoApplyError):
    pass


class InvariantViolation(AutoApplyError):
    pass


class StorageError(AutoApplyError):
    pass
