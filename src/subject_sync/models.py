"""
Pydantic data models for the subject sync pipeline.

Operational entities (Record, SubjectProfile, Identity) mirror the document
store; RetryTask, DeadLetterEntry, ErasureRequest and AuditEntry are the
pipeline's own bookkeeping.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def generate_id() -> str:
    return str(uuid.uuid4())


class RecordState(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SyncStatus(str, Enum):
    UNSYNCED = "unsynced"
    SYNCED = "synced"
    FAILED = "failed"
    ABANDONED = "abandoned"


class DeadLetterStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


class ErasureStatus(str, Enum):
    PENDING = "pending"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncState(BaseModel):
    """Sync bookkeeping shared by every entity the pipeline mirrors."""

    sync_status: SyncStatus = SyncStatus.UNSYNCED
    sync_error: Optional[str] = None
    sync_retry_count: int = 0
    synced_at: Optional[datetime] = None


class SessionMetadata(BaseModel):
    platform: Optional[str] = None
    device_model: Optional[str] = None
    os_version: Optional[str] = None
    average_fps: Optional[float] = None
    app_version: Optional[str] = None


class Record(SyncState):
    """Training session owned by a subject."""

    id: str
    subject_id: str
    state: RecordState = RecordState.ACTIVE
    exercise_type: Optional[str] = None
    rep_count: Optional[int] = None
    total_score: Optional[float] = None
    average_score: Optional[float] = None
    duration_seconds: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    metadata: Optional[SessionMetadata] = None

    @field_validator("rep_count", "duration_seconds")
    @classmethod
    def _non_negative(cls, v):
        if v is not None and v < 0:
            raise ValueError("must be >= 0")
        return v


class SubjectProfile(SyncState):
    """Root document of a subject. Holds the PII the warehouse must never see."""

    subject_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    last_ip: Optional[str] = None
    birth_year: Optional[int] = None
    gender: Optional[str] = None
    fitness_level: Optional[str] = None
    created_at: Optional[datetime] = None


class Identity(BaseModel):
    """Auth/identity record of a subject."""

    subject_id: str
    email: Optional[str] = None
    provider: str = "password"


EntityKind = Literal["record", "profile"]


class ChangeEvent(BaseModel):
    """Before/after snapshot pair emitted by the operational store."""

    kind: EntityKind
    subject_id: str
    entity_id: str
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None


class RetryTask(BaseModel):
    subject_id: str
    record_id: str
    target_table: str
    attempt_count: int = 0
    next_eligible_time: datetime

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.target_table, self.subject_id, self.record_id)


class DeadLetterEntry(BaseModel):
    subject_id: str
    record_id: str
    target_table: str
    failure_reason: str
    status: DeadLetterStatus = DeadLetterStatus.PENDING
    retryable: bool = True
    attempts: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.target_table, self.subject_id, self.record_id)


class ErasureRequest(BaseModel):
    id: str = Field(default_factory=generate_id)
    subject_id: str
    status: ErasureStatus = ErasureStatus.PENDING
    requested_at: datetime
    scheduled_deletion_date: datetime
    irreversible_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None


class AuditEntry(BaseModel):
    """Append-only erasure audit line. Holds the pseudonym, never the raw id."""

    pseudonym: str
    request_id: str
    step: str
    outcome: str
    timestamp: datetime = Field(default_factory=utc_now)
    detail: Optional[str] = None
