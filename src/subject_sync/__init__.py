"""Subject sync pipeline

Keeps the operational store and the analytical warehouse in step while
enforcing data protection:
- Pseudonymizer (HMAC salt epochs, PII stripping)
- Schema transformer (fixed warehouse columns, idempotent rows)
- Edge-triggered SyncDispatcher fed by the ChangeFeed
- RetryQueue + RetryWorker with capped exponential backoff
- Dead-letter store (file-based NDJSON)
- DeletionScheduler for right-to-erasure, with an append-only audit log
- Prometheus metrics and environment-based settings
"""

from .audit import AuditLog
from .dispatcher import AttemptResult, Outcome, SyncDispatcher
from .dlq import DeadLetterStore
from .erasure import DeletionScheduler, ErasureService, RunSummary
from .errors import (
    ConfigurationError,
    ErasureAlreadyPendingError,
    ErasureNotCancellableError,
    ErasureStepError,
    QueueFullError,
    SubjectLockedError,
    SyncError,
    TransformError,
    UnknownSubjectError,
)
from .feed import ChangeFeed
from .models import (
    AuditEntry,
    ChangeEvent,
    DeadLetterEntry,
    DeadLetterStatus,
    ErasureRequest,
    ErasureStatus,
    Identity,
    Record,
    RecordState,
    RetryTask,
    SessionMetadata,
    SubjectProfile,
    SyncStatus,
)
from .pipeline import PipelineHealth, SyncPipeline
from .policy import RetryPolicy, default_retry_classifier
from .pseudonymizer import Pseudonymizer, SaltConfig, strip_pii
from .queue import RetryQueue
from .settings import SyncSettings, get_settings
from .store import InMemoryIdentityStore, InMemoryOperationalStore
from .transformer import transform_profile, transform_record
from .worker import RetryWorker

__all__ = [
    # models
    "AuditEntry",
    "ChangeEvent",
    "DeadLetterEntry",
    "DeadLetterStatus",
    "ErasureRequest",
    "ErasureStatus",
    "Identity",
    "Record",
    "RecordState",
    "RetryTask",
    "SessionMetadata",
    "SubjectProfile",
    "SyncStatus",
    # errors
    "SyncError",
    "ConfigurationError",
    "TransformError",
    "SubjectLockedError",
    "ErasureAlreadyPendingError",
    "ErasureNotCancellableError",
    "ErasureStepError",
    "UnknownSubjectError",
    "QueueFullError",
    # pseudonymization + transform
    "Pseudonymizer",
    "SaltConfig",
    "strip_pii",
    "transform_record",
    "transform_profile",
    # runtime
    "ChangeFeed",
    "SyncDispatcher",
    "AttemptResult",
    "Outcome",
    "RetryPolicy",
    "default_retry_classifier",
    "RetryQueue",
    "RetryWorker",
    "DeadLetterStore",
    "ErasureService",
    "DeletionScheduler",
    "RunSummary",
    "AuditLog",
    "SyncPipeline",
    "PipelineHealth",
    "SyncSettings",
    "get_settings",
    # stores
    "InMemoryOperationalStore",
    "InMemoryIdentityStore",
]
