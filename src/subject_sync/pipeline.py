"""
Pipeline wiring.

``SyncPipeline`` owns one of each component and their lifecycles:

    async with SyncPipeline.from_settings(store=store, identities=ids) as pipeline:
        await store.save_record(record)      # change feed -> dispatcher
        await pipeline.wait_idle()

Startup fails closed: no salt or an unreachable warehouse raises
``ConfigurationError`` before anything subscribes to the change feed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from loguru import logger
from warehouse_client import AsyncWarehouse

from .audit import AuditLog
from .dispatcher import KIND_FOR_TABLE, TABLE_FOR_KIND, AttemptResult, Outcome, SyncDispatcher
from .dlq import DeadLetterStore
from .erasure import DeletionScheduler, ErasureService
from .errors import ConfigurationError
from .feed import ChangeFeed
from .models import ChangeEvent, DeadLetterStatus, SyncStatus, utc_now
from .policy import RetryPolicy
from .pseudonymizer import Pseudonymizer, SaltConfig
from .queue import RetryQueue
from .settings import SyncSettings, get_settings
from .store import IdentityStore, InMemoryIdentityStore, InMemoryOperationalStore, OperationalStore
from .worker import RetryWorker


@dataclass
class PipelineHealth:
    warehouse: bool
    worker_alive: bool
    scheduler_alive: bool
    retry_queue_depth: int
    salt_version: str
    dead_letters: dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.warehouse and self.worker_alive


class SyncPipeline:
    def __init__(
        self,
        store: OperationalStore,
        identities: IdentityStore,
        warehouse: Any,
        pseudonymizer: Optional[Pseudonymizer],
        *,
        feed: Optional[ChangeFeed] = None,
        policy: Optional[RetryPolicy] = None,
        queue: Optional[RetryQueue] = None,
        dlq: Optional[DeadLetterStore] = None,
        audit: Optional[AuditLog] = None,
        workers: int = 8,
        table_concurrency: int = 4,
        poll_interval: float = 1.0,
        batch_limit: int = 100,
        deletion_interval_sec: float = 86_400.0,
        grace_period_days: int = 30,
        run_scheduler: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.identities = identities
        self.warehouse = warehouse
        self.pseudonymizer = pseudonymizer
        if feed is None:
            feed = getattr(store, "feed", None)
        if feed is None:
            feed = ChangeFeed()
            if hasattr(store, "feed"):
                store.feed = feed
        self.feed = feed
        self.queue = queue or RetryQueue()
        self.dlq = dlq or DeadLetterStore()
        self.audit = audit or AuditLog()
        self.clock = clock
        self.run_scheduler = run_scheduler

        self.dispatcher = SyncDispatcher(
            store, warehouse, pseudonymizer, self.queue, self.dlq, policy=policy, clock=clock
        )
        self.worker = RetryWorker(
            self.dispatcher,
            self.queue,
            workers=workers,
            table_concurrency=table_concurrency,
            poll_interval=poll_interval,
            clock=clock,
        )
        self.erasures = ErasureService(store, grace_period_days=grace_period_days, clock=clock)
        self.scheduler = DeletionScheduler(
            store,
            identities,
            warehouse,
            pseudonymizer,
            self.audit,
            batch_limit=batch_limit,
            interval_sec=deletion_interval_sec,
            clock=clock,
        )
        self._inflight: set[asyncio.Task] = set()
        self._started = False
        self._owns_warehouse = False

    @classmethod
    def from_settings(
        cls,
        settings: Optional[SyncSettings] = None,
        *,
        store: Optional[OperationalStore] = None,
        identities: Optional[IdentityStore] = None,
        warehouse: Any = None,
        clock: Callable[[], datetime] = utc_now,
        **overrides,
    ) -> "SyncPipeline":
        """Build from ``SyncSettings``. A missing salt raises ConfigurationError here."""
        s = settings or get_settings()
        pseudonymizer = Pseudonymizer(SaltConfig.from_settings(s))
        owns_warehouse = False
        if warehouse is None:
            if not s.warehouse_dsn:
                raise ConfigurationError("SUBJECT_SYNC_WAREHOUSE_DSN is not set")
            warehouse = AsyncWarehouse(
                {
                    "dsn": s.warehouse_dsn,
                    "pool_max": s.warehouse_pool_max,
                    "statement_timeout_ms": s.warehouse_statement_timeout_ms,
                }
            )
            owns_warehouse = True
        if store is None:
            store = InMemoryOperationalStore(ChangeFeed())
        kwargs = dict(
            policy=RetryPolicy.from_settings(s),
            queue=RetryQueue(capacity=s.retry_queue_capacity),
            dlq=DeadLetterStore(s.dlq_path),
            audit=AuditLog(s.audit_path),
            workers=s.retry_workers,
            table_concurrency=s.table_concurrency,
            poll_interval=s.retry_poll_sec,
            batch_limit=s.deletion_batch_limit,
            deletion_interval_sec=s.deletion_interval_sec,
            grace_period_days=s.grace_period_days,
            clock=clock,
        )
        kwargs.update(overrides)
        pipeline = cls(store, identities or InMemoryIdentityStore(), warehouse, pseudonymizer, **kwargs)
        pipeline._owns_warehouse = owns_warehouse
        return pipeline

    # ---------- lifecycle ----------

    async def __aenter__(self) -> "SyncPipeline":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def start(self) -> None:
        if self._started:
            return
        if self.pseudonymizer is None:
            raise ConfigurationError("no pseudonymizer configured; refusing to sync raw identifiers")
        opener = getattr(self.warehouse, "open", None)
        if opener is not None:
            await opener()
        if not await self.warehouse.health():
            raise ConfigurationError("warehouse is unreachable at startup")

        self.feed.subscribe(self._on_change)
        recovered = await self.recover()
        self.worker.start()
        if self.run_scheduler:
            self.scheduler.start()
        self._started = True
        logger.success(
            f"Sync pipeline started (salt {self.pseudonymizer.salt_version}, "
            f"{recovered} retries recovered)"
        )

    async def stop(self) -> None:
        if not self._started:
            return
        self.feed.unsubscribe(self._on_change)
        await self.wait_idle()
        await self.worker.stop()
        await self.scheduler.stop()
        if self._owns_warehouse:
            await self.warehouse.aclose()
        self._started = False
        logger.info("Sync pipeline stopped")

    # ---------- change feed ----------

    async def _on_change(self, event: ChangeEvent) -> None:
        task = asyncio.create_task(self.dispatcher.handle_change(event))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def wait_idle(self) -> None:
        """Wait until every dispatch triggered so far has finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ---------- recovery ----------

    async def recover(self, now: Optional[datetime] = None) -> int:
        """Rebuild retry tasks from entities left ``failed`` (e.g. after a restart)."""
        now = now or self.clock()
        n = 0
        for kind, entity in await self.store.sync_failed_entities():
            table = TABLE_FOR_KIND[kind]
            entity_id = entity.subject_id if kind == "profile" else entity.id
            if (table, entity.subject_id, entity_id) in self.queue:
                continue
            await self.dispatcher.schedule_retry(
                table,
                entity.subject_id,
                entity_id,
                attempt_count=entity.sync_retry_count,
                now=now,
            )
            n += 1
        if n:
            logger.info(f"Recovered {n} retry tasks from failed entities")
        return n

    async def requeue_dead_letter(
        self, table: str, subject_id: str, record_id: str
    ) -> AttemptResult:
        """Manual recovery: push a dead-lettered entity again with a fresh retry budget."""
        key = (table, subject_id, record_id)
        if self.dlq.get(key) is None:
            raise LookupError(f"no dead-letter entry for {table}/{record_id}")
        kind = KIND_FOR_TABLE[table]
        self.queue.remove(key)
        await self.store.update_sync_state(
            kind,
            subject_id,
            record_id,
            lambda _: {"sync_status": SyncStatus.UNSYNCED, "sync_retry_count": 0},
        )
        result = await self.dispatcher.sync(kind, subject_id, record_id)
        if result.outcome == Outcome.MISSING:
            await self.dlq.resolve(key, now=self.clock(), note="source entity no longer exists")
        logger.info(f"Dead letter {table}/{record_id} requeued: {result.outcome.value}")
        return result

    async def requeue_dead_letters(
        self,
        status: Optional[DeadLetterStatus] = DeadLetterStatus.ABANDONED,
        limit: int = 100,
    ) -> dict[str, int]:
        """Requeue up to ``limit`` open dead letters (oldest first) with a fresh retry budget.

        ``status=None`` takes both pending and abandoned entries. Returns a count
        per attempt outcome.
        """
        if status == DeadLetterStatus.RESOLVED:
            raise ValueError("resolved dead letters cannot be requeued")
        if limit <= 0:
            raise ValueError("limit must be > 0")
        entries = [e for e in self.dlq.list(status) if e.status != DeadLetterStatus.RESOLVED]
        tally: dict[str, int] = {}
        for entry in entries[:limit]:
            result = await self.requeue_dead_letter(*entry.key)
            tally[result.outcome.value] = tally.get(result.outcome.value, 0) + 1
        logger.info(
            f"Requeued {min(len(entries), limit)} of {len(entries)} dead letters: {tally}"
        )
        return tally

    # ---------- status ----------

    async def health(self) -> PipelineHealth:
        try:
            warehouse_ok = await self.warehouse.health()
        except Exception as exc:
            logger.warning(f"Warehouse health check failed: {exc}")
            warehouse_ok = False
        return PipelineHealth(
            warehouse=warehouse_ok,
            worker_alive=self.worker.alive,
            scheduler_alive=self.scheduler.alive,
            retry_queue_depth=self.queue.size,
            salt_version=self.pseudonymizer.salt_version if self.pseudonymizer else "",
            dead_letters=self.dlq.counts(),
        )
