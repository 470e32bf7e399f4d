"""
Operational store boundary.

The pipeline only needs a handful of operations from the document store:
snapshot reads, atomic read-modify-write of sync fields, cascading deletes
under a subject, and erasure-request bookkeeping. ``OperationalStore`` and
``IdentityStore`` describe that surface; the in-memory implementations back
local runs and tests.

Ownership is a strict tree: subject -> records. Records hold no back
references, so erasing a subject is a bulk delete of its subtree.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Callable, Optional, Protocol, Union

from loguru import logger

from .errors import ErasureAlreadyPendingError, SubjectLockedError
from .feed import ChangeFeed
from .models import (
    ChangeEvent,
    EntityKind,
    ErasureRequest,
    ErasureStatus,
    Identity,
    Record,
    SubjectProfile,
    SyncState,
    SyncStatus,
)

SyncEntity = Union[Record, SubjectProfile]
SyncMutation = Callable[[SyncEntity], dict]
ErasureMutation = Callable[[ErasureRequest], Optional[dict]]

SYNC_FIELDS = tuple(SyncState.model_fields)


class OperationalStore(Protocol):
    async def get_profile(self, subject_id: str) -> Optional[SubjectProfile]: ...

    async def save_profile(self, profile: SubjectProfile) -> SubjectProfile: ...

    async def get_record(self, subject_id: str, record_id: str) -> Optional[Record]: ...

    async def save_record(self, record: Record) -> Record: ...

    async def list_records(self, subject_id: str) -> list[Record]: ...

    async def get_entity(
        self, kind: EntityKind, subject_id: str, entity_id: str
    ) -> Optional[SyncEntity]: ...

    async def update_sync_state(
        self, kind: EntityKind, subject_id: str, entity_id: str, mutate: SyncMutation
    ) -> Optional[SyncEntity]: ...

    async def sync_failed_entities(self) -> list[tuple[EntityKind, SyncEntity]]: ...

    async def delete_records(self, subject_id: str) -> int: ...

    async def delete_profile(self, subject_id: str) -> bool: ...

    async def create_erasure_request(self, request: ErasureRequest) -> ErasureRequest: ...

    async def get_erasure_request(self, request_id: str) -> Optional[ErasureRequest]: ...

    async def pending_erasure_for(self, subject_id: str) -> Optional[ErasureRequest]: ...

    async def update_erasure_request(
        self, request_id: str, mutate: ErasureMutation
    ) -> Optional[ErasureRequest]: ...

    async def due_erasure_requests(self, now: datetime, limit: int) -> list[ErasureRequest]: ...


class IdentityStore(Protocol):
    async def get(self, subject_id: str) -> Optional[Identity]: ...

    async def put(self, identity: Identity) -> None: ...

    async def delete(self, subject_id: str) -> bool: ...


class InMemoryOperationalStore:
    """Dict-backed OperationalStore that publishes to a ChangeFeed."""

    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.feed = feed
        self._profiles: dict[str, SubjectProfile] = {}
        self._records: dict[str, dict[str, Record]] = defaultdict(dict)
        self._erasures: dict[str, ErasureRequest] = {}
        self._locks: dict[tuple, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ---------- subject-facing writes (guarded) ----------

    async def _ensure_writable(self, subject_id: str) -> None:
        if await self.pending_erasure_for(subject_id) is not None:
            raise SubjectLockedError("subject has a pending erasure request; writes are frozen")

    async def save_profile(self, profile: SubjectProfile) -> SubjectProfile:
        await self._ensure_writable(profile.subject_id)
        async with self._locks[("profile", profile.subject_id)]:
            prev = self._profiles.get(profile.subject_id)
            stored = _keep_sync_fields(profile, prev)
            self._profiles[profile.subject_id] = stored
        await self._publish("profile", profile.subject_id, profile.subject_id, prev, stored)
        return stored.model_copy(deep=True)

    async def save_record(self, record: Record) -> Record:
        await self._ensure_writable(record.subject_id)
        async with self._locks[("record", record.subject_id, record.id)]:
            prev = self._records[record.subject_id].get(record.id)
            stored = _keep_sync_fields(record, prev)
            self._records[record.subject_id][record.id] = stored
        await self._publish("record", record.subject_id, record.id, prev, stored)
        return stored.model_copy(deep=True)

    async def _publish(self, kind, subject_id, entity_id, prev, stored) -> None:
        if self.feed is None:
            return
        await self.feed.publish(
            ChangeEvent(
                kind=kind,
                subject_id=subject_id,
                entity_id=entity_id,
                before=prev.model_dump(mode="json") if prev is not None else None,
                after=stored.model_dump(mode="json"),
            )
        )

    # ---------- reads ----------

    async def get_profile(self, subject_id: str) -> Optional[SubjectProfile]:
        p = self._profiles.get(subject_id)
        return p.model_copy(deep=True) if p else None

    async def get_record(self, subject_id: str, record_id: str) -> Optional[Record]:
        r = self._records.get(subject_id, {}).get(record_id)
        return r.model_copy(deep=True) if r else None

    async def list_records(self, subject_id: str) -> list[Record]:
        return [r.model_copy(deep=True) for r in self._records.get(subject_id, {}).values()]

    async def get_entity(
        self, kind: EntityKind, subject_id: str, entity_id: str
    ) -> Optional[SyncEntity]:
        if kind == "profile":
            return await self.get_profile(subject_id)
        return await self.get_record(subject_id, entity_id)

    # ---------- pipeline-owned sync fields ----------

    async def update_sync_state(
        self, kind: EntityKind, subject_id: str, entity_id: str, mutate: SyncMutation
    ) -> Optional[SyncEntity]:
        """Atomically apply ``mutate`` (returns a dict of sync-field changes).

        Returns None, and changes nothing, when the entity no longer exists.
        """
        key = ("profile", subject_id) if kind == "profile" else ("record", subject_id, entity_id)
        async with self._locks[key]:
            if kind == "profile":
                current = self._profiles.get(subject_id)
            else:
                current = self._records.get(subject_id, {}).get(entity_id)
            if current is None:
                return None
            changes = mutate(current.model_copy(deep=True))
            unknown = set(changes) - set(SYNC_FIELDS)
            if unknown:
                raise ValueError(f"update_sync_state may only touch sync fields, got {unknown}")
            updated = current.model_copy(update=changes)
            if kind == "profile":
                self._profiles[subject_id] = updated
            else:
                self._records[subject_id][entity_id] = updated
            return updated.model_copy(deep=True)

    async def sync_failed_entities(self) -> list[tuple[EntityKind, SyncEntity]]:
        out: list[tuple[EntityKind, SyncEntity]] = []
        for p in self._profiles.values():
            if p.sync_status == SyncStatus.FAILED:
                out.append(("profile", p.model_copy(deep=True)))
        for recs in self._records.values():
            for r in recs.values():
                if r.sync_status == SyncStatus.FAILED:
                    out.append(("record", r.model_copy(deep=True)))
        return out

    # ---------- erasure (idempotent deletes) ----------

    async def delete_records(self, subject_id: str) -> int:
        recs = self._records.pop(subject_id, {})
        return len(recs)

    async def delete_profile(self, subject_id: str) -> bool:
        return self._profiles.pop(subject_id, None) is not None

    async def create_erasure_request(self, request: ErasureRequest) -> ErasureRequest:
        async with self._locks[("erasure-subject", request.subject_id)]:
            if request.status == ErasureStatus.PENDING and any(
                r.subject_id == request.subject_id and r.status == ErasureStatus.PENDING
                for r in self._erasures.values()
            ):
                raise ErasureAlreadyPendingError("subject already has a pending erasure request")
            self._erasures[request.id] = request.model_copy(deep=True)
        logger.debug(f"Erasure request {request.id} stored ({request.status.value})")
        return request

    async def get_erasure_request(self, request_id: str) -> Optional[ErasureRequest]:
        r = self._erasures.get(request_id)
        return r.model_copy(deep=True) if r else None

    async def pending_erasure_for(self, subject_id: str) -> Optional[ErasureRequest]:
        for r in self._erasures.values():
            if r.subject_id == subject_id and r.status == ErasureStatus.PENDING:
                return r.model_copy(deep=True)
        return None

    async def update_erasure_request(
        self, request_id: str, mutate: ErasureMutation
    ) -> Optional[ErasureRequest]:
        """Atomic read-modify-write; ``mutate`` returning None leaves it unchanged."""
        async with self._locks[("erasure", request_id)]:
            current = self._erasures.get(request_id)
            if current is None:
                return None
            changes = mutate(current.model_copy(deep=True))
            if changes:
                current = current.model_copy(update=changes)
                self._erasures[request_id] = current
            return current.model_copy(deep=True)

    async def due_erasure_requests(self, now: datetime, limit: int) -> list[ErasureRequest]:
        due = sorted(
            (
                r
                for r in self._erasures.values()
                if r.status == ErasureStatus.PENDING and r.scheduled_deletion_date <= now
            ),
            key=lambda r: r.scheduled_deletion_date,
        )
        return [r.model_copy(deep=True) for r in due[:limit]]


class InMemoryIdentityStore:
    def __init__(self) -> None:
        self._identities: dict[str, Identity] = {}

    async def get(self, subject_id: str) -> Optional[Identity]:
        return self._identities.get(subject_id)

    async def put(self, identity: Identity) -> None:
        self._identities[identity.subject_id] = identity

    async def delete(self, subject_id: str) -> bool:
        return self._identities.pop(subject_id, None) is not None


def _keep_sync_fields(incoming: SyncEntity, prev: Optional[SyncEntity]) -> SyncEntity:
    """Subject-facing saves never overwrite pipeline-owned sync fields."""
    if prev is None:
        return incoming.model_copy(deep=True)
    return incoming.model_copy(update={f: getattr(prev, f) for f in SYNC_FIELDS}, deep=True)
