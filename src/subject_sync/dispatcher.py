"""
Sync dispatcher.

Reacts to change events. A record is pushed to the warehouse on the edge
into ``completed`` (never on completed -> completed); a profile is pushed
whenever one of its warehouse-visible fields changes. The dispatcher keeps
no state between calls: outcomes are written to the entity's sync fields and
to the dead-letter store, and retryable failures are handed to the retry queue.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from loguru import logger

from .dlq import DeadLetterStore
from .errors import QueueFullError, TransformError
from .metrics import SYNC_ATTEMPTS_TOTAL, SYNC_LATENCY_SECONDS
from .models import (
    ChangeEvent,
    DeadLetterStatus,
    EntityKind,
    RecordState,
    RetryTask,
    SyncStatus,
    utc_now,
)
from .policy import RetryPolicy
from .pseudonymizer import Pseudonymizer, strip_pii
from .queue import RetryQueue
from .store import OperationalStore
from .transformer import SESSIONS_TABLE, SUBJECTS_TABLE, TRANSFORMS

TABLE_FOR_KIND: dict[str, str] = {"record": SESSIONS_TABLE, "profile": SUBJECTS_TABLE}
KIND_FOR_TABLE: dict[str, EntityKind] = {SESSIONS_TABLE: "record", SUBJECTS_TABLE: "profile"}

# Profile fields that reach the warehouse (after generalization).
PROFILE_SYNC_FIELDS = ("birth_year", "gender", "fitness_level", "created_at")


class Outcome(str, Enum):
    SYNCED = "synced"
    MISSING = "missing"  # entity deleted or no longer eligible
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class AttemptResult:
    outcome: Outcome
    error: Optional[BaseException] = None
    row: Optional[dict] = None

    @property
    def reason(self) -> str:
        if self.error is None:
            return ""
        return f"{type(self.error).__name__}: {self.error}"


class SyncDispatcher:
    def __init__(
        self,
        store: OperationalStore,
        warehouse: Any,
        pseudonymizer: Pseudonymizer,
        retry_queue: RetryQueue,
        dlq: DeadLetterStore,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.warehouse = warehouse
        self.pseudonymizer = pseudonymizer
        self.retry_queue = retry_queue
        self.dlq = dlq
        self.policy = policy or RetryPolicy()
        self.clock = clock

    # ---------- trigger ----------

    @staticmethod
    def should_sync(event: ChangeEvent) -> bool:
        after, before = event.after, event.before
        if after is None:
            return False
        if event.kind == "record":
            was_completed = before is not None and before.get("state") == RecordState.COMPLETED.value
            return after.get("state") == RecordState.COMPLETED.value and not was_completed
        if before is None:
            return True
        return any(before.get(f) != after.get(f) for f in PROFILE_SYNC_FIELDS)

    async def handle_change(self, event: ChangeEvent) -> None:
        """Change-feed entry point. Never raises: failures are recorded, not propagated."""
        if not self.should_sync(event):
            return
        try:
            await self.sync(event.kind, event.subject_id, event.entity_id)
        except Exception as exc:
            logger.exception(
                f"Dispatcher crashed handling {event.kind} {event.entity_id}: {exc}"
            )

    # ---------- single attempt (shared with the retry worker) ----------

    async def attempt(self, table: str, subject_id: str, entity_id: str) -> AttemptResult:
        """Re-read the entity, transform + pseudonymize it, upsert it."""
        kind = KIND_FOR_TABLE[table]
        entity = await self.store.get_entity(kind, subject_id, entity_id)
        if entity is None:
            return AttemptResult(Outcome.MISSING)
        if kind == "record" and entity.state != RecordState.COMPLETED:
            return AttemptResult(Outcome.MISSING)

        payload = strip_pii(entity.model_dump())
        t0 = time.perf_counter()
        try:
            row = TRANSFORMS[table](payload, self.pseudonymizer)
        except TransformError as exc:
            return AttemptResult(Outcome.FATAL, exc)

        try:
            await self.warehouse.upsert(table, [row])
        except Exception as exc:
            if self.policy.classify_retryable(exc):
                return AttemptResult(Outcome.RETRYABLE, exc)
            return AttemptResult(Outcome.FATAL, exc)
        finally:
            SYNC_LATENCY_SECONDS.labels(table=table).observe(time.perf_counter() - t0)
        return AttemptResult(Outcome.SYNCED, row=row)

    # ---------- dispatch ----------

    async def sync(self, kind: EntityKind, subject_id: str, entity_id: str) -> AttemptResult:
        table = TABLE_FOR_KIND[kind]
        key = (table, subject_id, entity_id)
        result = await self.attempt(table, subject_id, entity_id)
        SYNC_ATTEMPTS_TOTAL.labels(table=table, path="dispatch", outcome=result.outcome.value).inc()
        now = self.clock()

        if result.outcome == Outcome.SYNCED:
            await self.store.update_sync_state(
                kind,
                subject_id,
                entity_id,
                lambda _: {
                    "sync_status": SyncStatus.SYNCED,
                    "sync_error": None,
                    "sync_retry_count": 0,
                    "synced_at": now,
                },
            )
            self.retry_queue.remove(key)
            await self.dlq.resolve(key, now=now)
            logger.debug(f"Synced {kind} {entity_id} to {table}")
            return result

        if result.outcome == Outcome.MISSING:
            logger.debug(f"Skipping sync of {kind} {entity_id}: not present or not eligible")
            return result

        if result.outcome == Outcome.FATAL:
            await self.abandon(kind, key, result.reason, attempts=0, retryable=False, now=now)
            return result

        queued = self.retry_queue.get(key)
        attempts = queued.attempt_count if queued is not None else 0
        await self.store.update_sync_state(
            kind,
            subject_id,
            entity_id,
            lambda _: {
                "sync_status": SyncStatus.FAILED,
                "sync_error": result.reason,
                "sync_retry_count": attempts,
            },
        )
        await self.dlq.open(
            subject_id=subject_id,
            record_id=entity_id,
            target_table=table,
            reason=result.reason,
            retryable=True,
            attempts=attempts,
            now=now,
        )
        if queued is None:
            if not await self.schedule_or_abandon(
                kind, key, result.reason, attempt_count=attempts, now=now
            ):
                return result
        logger.warning(f"Sync of {kind} {entity_id} failed, retry scheduled: {result.reason}")
        return result

    async def sync_record(self, subject_id: str, record_id: str) -> AttemptResult:
        return await self.sync("record", subject_id, record_id)

    async def sync_profile(self, subject_id: str) -> AttemptResult:
        return await self.sync("profile", subject_id, subject_id)

    async def resync(
        self, subject_id: str, record_id: str, table: str = SESSIONS_TABLE
    ) -> AttemptResult:
        """Explicit resync: pushes the entity again even if it is already synced."""
        kind = KIND_FOR_TABLE[table]
        logger.info(f"Explicit resync of {kind} {record_id} to {table}")
        return await self.sync(kind, subject_id, record_id)

    # ---------- helpers shared with the worker ----------

    async def schedule_retry(
        self,
        table: str,
        subject_id: str,
        entity_id: str,
        *,
        attempt_count: int,
        now: datetime,
    ) -> str:
        delay_ms = self.policy.next_backoff_ms(attempt_count + 1)
        not_before = now + timedelta(milliseconds=delay_ms)
        task = RetryTask(
            subject_id=subject_id,
            record_id=entity_id,
            target_table=table,
            attempt_count=attempt_count,
            next_eligible_time=not_before,
        )
        return await self.retry_queue.enqueue(task, not_before)

    async def schedule_or_abandon(
        self,
        kind: EntityKind,
        key: tuple[str, str, str],
        reason: str,
        *,
        attempt_count: int,
        now: datetime,
    ) -> bool:
        """Schedule the next retry; a full queue abandons the entity instead.

        Returns False when the entity was abandoned. The dead-letter entry stays
        retryable so it can be requeued once the queue drains.
        """
        table, subject_id, entity_id = key
        try:
            await self.schedule_retry(
                table, subject_id, entity_id, attempt_count=attempt_count, now=now
            )
        except QueueFullError:
            await self.abandon(
                kind,
                key,
                f"retry queue full; last error: {reason}",
                attempts=attempt_count,
                retryable=True,
                now=now,
            )
            return False
        return True

    async def abandon(
        self,
        kind: EntityKind,
        key: tuple[str, str, str],
        reason: str,
        *,
        attempts: int,
        retryable: bool,
        now: datetime,
    ) -> None:
        table, subject_id, entity_id = key
        await self.store.update_sync_state(
            kind,
            subject_id,
            entity_id,
            lambda _: {
                "sync_status": SyncStatus.ABANDONED,
                "sync_error": reason,
                "sync_retry_count": attempts,
            },
        )
        self.retry_queue.remove(key)
        if self.dlq.get(key) is None:
            await self.dlq.open(
                subject_id=subject_id,
                record_id=entity_id,
                target_table=table,
                reason=reason,
                retryable=retryable,
                attempts=attempts,
                status=DeadLetterStatus.ABANDONED,
                now=now,
            )
        else:
            await self.dlq.abandon(
                key, reason=reason, attempts=attempts, retryable=retryable, now=now
            )
        logger.error(f"Abandoned sync of {kind} {entity_id} after {attempts} retries: {reason}")
