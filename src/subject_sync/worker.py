from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from .dispatcher import KIND_FOR_TABLE, Outcome, SyncDispatcher
from .errors import QueueFullError
from .metrics import RETRY_QUEUE_DEPTH, SYNC_ATTEMPTS_TOTAL
from .models import RetryTask, SyncStatus, utc_now
from .queue import RetryQueue


class RetryWorker:
    """Drains the retry queue with bounded concurrency.

    Task lifecycle: queued -> in flight -> removed (success or entity gone),
    re-queued with attempt_count + 1 and a longer delay (retryable failure),
    or abandoned (non-retryable failure or the attempt ceiling reached).
    Concurrency is capped overall (``workers``) and per destination table
    (``table_concurrency``).
    """

    def __init__(
        self,
        dispatcher: SyncDispatcher,
        queue: RetryQueue,
        *,
        workers: int = 8,
        table_concurrency: int = 4,
        poll_interval: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        if workers <= 0 or table_concurrency <= 0:
            raise ValueError("workers and table_concurrency must be > 0")
        self.dispatcher = dispatcher
        self.queue = queue
        self.poll_interval = poll_interval
        self.clock = clock
        self._pool = asyncio.Semaphore(workers)
        self._table_concurrency = table_concurrency
        self._table_sems: dict[str, asyncio.Semaphore] = defaultdict(
            lambda: asyncio.Semaphore(self._table_concurrency)
        )
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def policy(self):
        return self.dispatcher.policy

    # ---------- one pass ----------

    async def drain_due(self, now: Optional[datetime] = None) -> int:
        """Process every task eligible at ``now``. Returns the number processed."""
        now = now or self.clock()
        tasks = await self.queue.due(now)
        if not tasks:
            RETRY_QUEUE_DEPTH.set(self.queue.size)
            return 0
        results = await asyncio.gather(
            *(self._guarded(t, now) for t in tasks), return_exceptions=True
        )
        for task, res in zip(tasks, results):
            if isinstance(res, BaseException):
                # Never lose a task to an unexpected error: put it back as-is.
                logger.error(
                    f"Retry of {task.target_table}/{task.record_id} crashed: "
                    f"{type(res).__name__}: {res}"
                )
                try:
                    await self.queue.enqueue(task, task.next_eligible_time)
                except QueueFullError:
                    await self.dispatcher.abandon(
                        KIND_FOR_TABLE[task.target_table],
                        task.key,
                        f"retry queue full; last error: {type(res).__name__}: {res}",
                        attempts=task.attempt_count,
                        retryable=True,
                        now=now,
                    )
        RETRY_QUEUE_DEPTH.set(self.queue.size)
        return len(tasks)

    async def _guarded(self, task: RetryTask, now: datetime) -> None:
        async with self._pool, self._table_sems[task.target_table]:
            await self.process(task, now)

    async def process(self, task: RetryTask, now: datetime) -> Outcome:
        d = self.dispatcher
        kind = KIND_FOR_TABLE[task.target_table]
        key = task.key
        attempt = task.attempt_count + 1

        result = await d.attempt(task.target_table, task.subject_id, task.record_id)
        SYNC_ATTEMPTS_TOTAL.labels(
            table=task.target_table, path="retry", outcome=result.outcome.value
        ).inc()

        if result.outcome == Outcome.SYNCED:
            await d.store.update_sync_state(
                kind,
                task.subject_id,
                task.record_id,
                lambda _: {
                    "sync_status": SyncStatus.SYNCED,
                    "sync_error": None,
                    "sync_retry_count": attempt,
                    "synced_at": now,
                },
            )
            await d.dlq.resolve(key, now=now)
            logger.info(f"Retry {attempt} synced {kind} {task.record_id}")
            return result.outcome

        if result.outcome == Outcome.MISSING:
            # Deleted (e.g. erased) while queued: drop, never resurrect.
            await d.dlq.resolve(key, now=now, note="source entity no longer exists")
            logger.info(f"Dropping retry of {kind} {task.record_id}: entity gone")
            return result.outcome

        if result.outcome == Outcome.FATAL:
            await d.abandon(kind, key, result.reason, attempts=attempt, retryable=False, now=now)
            return result.outcome

        if self.policy.exhausted(attempt):
            await d.abandon(kind, key, result.reason, attempts=attempt, retryable=True, now=now)
            return result.outcome

        await d.store.update_sync_state(
            kind,
            task.subject_id,
            task.record_id,
            lambda _: {
                "sync_status": SyncStatus.FAILED,
                "sync_error": result.reason,
                "sync_retry_count": attempt,
            },
        )
        await d.dlq.open(
            subject_id=task.subject_id,
            record_id=task.record_id,
            target_table=task.target_table,
            reason=result.reason,
            retryable=True,
            attempts=attempt,
            now=now,
        )
        if not await d.schedule_or_abandon(
            kind, key, result.reason, attempt_count=attempt, now=now
        ):
            return result.outcome
        logger.warning(
            f"Retry {attempt}/{self.policy.max_attempts} of {kind} {task.record_id} failed: "
            f"{result.reason}"
        )
        return result.outcome

    # ---------- background loop ----------

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run(), name="retry-worker")

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            self.queue.wake()
            await self._task
            self._task = None

    @property
    def alive(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        logger.debug("Retry worker started")
        while not self._stopping.is_set():
            try:
                await self.drain_due()
            except Exception as exc:
                logger.exception(f"Retry worker pass failed: {exc}")
            nxt = self.queue.next_eligible()
            timeout = self.poll_interval
            if nxt is not None:
                timeout = min(timeout, max((nxt - self.clock()).total_seconds(), 0.0))
            if self._stopping.is_set():
                break
            await self.queue.wait(timeout)
        logger.debug("Retry worker stopped")
