"""
Exception taxonomy for the sync pipeline.
"""

from __future__ import annotations

from typing import Sequence


class SyncError(Exception):
    """Base error for the sync pipeline."""

    pass


class ConfigurationError(SyncError):
    """Fatal startup misconfiguration (missing salt, unreachable warehouse)."""

    pass


class TransformError(SyncError):
    """Record cannot be mapped to a warehouse row. Never retryable."""

    def __init__(self, table: str, missing: Sequence[str]):
        self.table = table
        self.missing = list(missing)
        super().__init__(f"{table}: missing required field(s) {', '.join(self.missing)}")


class SubjectLockedError(SyncError):
    """Write attempted on a subject whose erasure is pending."""

    pass


class ErasureAlreadyPendingError(SyncError):
    pass


class ErasureNotCancellableError(SyncError):
    """Cancellation arrived after the irreversible steps began."""

    pass


class QueueFullError(SyncError):
    pass


class UnknownSubjectError(SyncError):
    pass


class ErasureStepError(SyncError):
    """One step of the erasure sequence did not reach its target state."""

    pass
