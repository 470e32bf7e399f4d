"""
Unit tests for RetryWorker scenarios (clock-driven, no real backoff sleeps).
"""

import asyncio

import pytest

from conftest import FlakyWarehouse, completed_record
from subject_sync.dispatcher import Outcome, SyncDispatcher
from subject_sync.models import DeadLetterStatus, SyncStatus
from subject_sync.queue import RetryQueue
from subject_sync.transformer import SESSIONS_TABLE
from subject_sync.worker import RetryWorker

KEY = (SESSIONS_TABLE, "u1", "r1")


async def _drain_next(worker, queue, clock) -> int:
    """Jump the clock to the next eligible task and drain it."""
    clock.now = queue.next_eligible()
    return await worker.drain_due()


@pytest.mark.asyncio
async def test_fails_twice_then_succeeds(store, warehouse, wired, worker, queue, dlq, clock):
    warehouse.fail_first_n = 2
    await store.save_record(completed_record("u1", "r1"))
    assert (await store.get_record("u1", "r1")).sync_status == SyncStatus.FAILED

    assert await _drain_next(worker, queue, clock) == 1
    rec = await store.get_record("u1", "r1")
    assert rec.sync_status == SyncStatus.FAILED
    assert rec.sync_retry_count == 1
    assert queue.get(KEY).attempt_count == 1

    assert await _drain_next(worker, queue, clock) == 1
    rec = await store.get_record("u1", "r1")
    assert rec.sync_status == SyncStatus.SYNCED
    assert rec.sync_retry_count == 2
    assert rec.sync_error is None
    assert len(warehouse.rows(SESSIONS_TABLE)) == 1
    assert queue.size == 0
    assert dlq.get(KEY).status == DeadLetterStatus.RESOLVED


@pytest.mark.asyncio
async def test_always_failing_record_abandoned_after_ten_retries(
    store, warehouse, wired, worker, queue, dlq, clock
):
    warehouse.fail_first_n = 10**6
    await store.save_record(completed_record("u1", "r1"))

    eligible = []
    while queue.size:
        eligible.append(queue.next_eligible())
        await _drain_next(worker, queue, clock)

    assert len(eligible) == 10
    gaps = [b - a for a, b in zip(eligible, eligible[1:])]
    assert all(g2 > g1 for g1, g2 in zip(gaps, gaps[1:]))
    assert warehouse.upsert_calls == 11

    rec = await store.get_record("u1", "r1")
    assert rec.sync_status == SyncStatus.ABANDONED
    assert rec.sync_retry_count == 10
    entry = dlq.get(KEY)
    assert entry.status == DeadLetterStatus.ABANDONED
    assert entry.attempts == 10

    # never retried again
    clock.advance(days=30)
    assert await worker.drain_due() == 0
    assert warehouse.upsert_calls == 11


@pytest.mark.asyncio
async def test_deleted_record_is_not_resurrected(store, warehouse, wired, worker, queue, dlq, clock):
    warehouse.fail_first_n = 1
    await store.save_record(completed_record("u1", "r1"))
    await store.delete_records("u1")

    assert await _drain_next(worker, queue, clock) == 1
    assert warehouse.rows(SESSIONS_TABLE) == []
    assert await store.get_record("u1", "r1") is None
    assert queue.size == 0
    entry = dlq.get(KEY)
    assert entry.status == DeadLetterStatus.RESOLVED
    assert "no longer exists" in entry.failure_reason


@pytest.mark.asyncio
async def test_nothing_due_before_backoff_elapses(store, warehouse, wired, worker, clock):
    warehouse.fail_first_n = 1
    await store.save_record(completed_record("u1", "r1"))
    clock.advance(milliseconds=999)
    assert await worker.drain_due() == 0
    clock.advance(milliseconds=1)
    assert await worker.drain_due() == 1


@pytest.mark.asyncio
async def test_crashed_task_is_requeued(store, warehouse, wired, worker, dispatcher, queue, clock):
    warehouse.fail_first_n = 1
    await store.save_record(completed_record("u1", "r1"))

    async def boom(*args):
        raise RuntimeError("unexpected")

    dispatcher.attempt = boom
    assert await _drain_next(worker, queue, clock) == 1
    assert KEY in queue
    assert queue.get(KEY).attempt_count == 0


@pytest.mark.asyncio
async def test_non_retryable_error_on_retry_abandons(store, warehouse, wired, worker, queue, dlq, clock):
    warehouse.fail_first_n = 1
    await store.save_record(completed_record("u1", "r1"))
    warehouse.fail_first_n = 1
    warehouse.error = ValueError("schema mismatch")

    await _drain_next(worker, queue, clock)
    rec = await store.get_record("u1", "r1")
    assert rec.sync_status == SyncStatus.ABANDONED
    entry = dlq.get(KEY)
    assert entry.status == DeadLetterStatus.ABANDONED
    assert entry.retryable is False
    assert queue.size == 0


class SlowWarehouse(FlakyWarehouse):
    def __init__(self):
        super().__init__()
        self.active = 0
        self.peak = 0

    async def upsert(self, table, rows):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.01)
            return await super().upsert(table, rows)
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_per_table_concurrency_is_capped(store, dispatcher, queue, clock):
    wh = SlowWarehouse()
    dispatcher.warehouse = wh
    for i in range(10):
        await store.save_record(completed_record("u1", f"r{i}"))
        await dispatcher.schedule_retry(SESSIONS_TABLE, "u1", f"r{i}", attempt_count=0, now=clock())

    w = RetryWorker(dispatcher, queue, workers=8, table_concurrency=2, clock=clock)
    clock.advance(seconds=1)
    assert await w.drain_due() == 10
    assert wh.peak == 2
    assert len(wh.rows(SESSIONS_TABLE)) == 10


@pytest.mark.asyncio
async def test_background_loop_drains_and_stops(store, warehouse, dispatcher, queue, clock):
    await store.save_record(completed_record("u1", "r1"))
    await dispatcher.schedule_retry(SESSIONS_TABLE, "u1", "r1", attempt_count=0, now=clock())
    clock.advance(seconds=1)

    w = RetryWorker(dispatcher, queue, poll_interval=0.01, clock=clock)
    w.start()
    assert w.alive
    for _ in range(50):
        if queue.size == 0:
            break
        await asyncio.sleep(0.01)
    await w.stop()
    assert not w.alive
    assert (await store.get_record("u1", "r1")).sync_status == SyncStatus.SYNCED


@pytest.mark.asyncio
async def test_process_returns_outcome(store, dispatcher, worker, queue, clock):
    await store.save_record(completed_record("u1", "r1"))
    await dispatcher.schedule_retry(SESSIONS_TABLE, "u1", "r1", attempt_count=0, now=clock())
    (task,) = await queue.due(clock.advance(seconds=1))
    assert await worker.process(task, clock()) == Outcome.SYNCED


def test_invalid_pool_sizes(dispatcher, queue):
    with pytest.raises(ValueError):
        RetryWorker(dispatcher, queue, workers=0)


@pytest.fixture
def small_queue():
    return RetryQueue(capacity=1)


@pytest.fixture
def cramped(store, warehouse, pseudonymizer, dlq, small_queue, clock):
    d = SyncDispatcher(store, warehouse, pseudonymizer, small_queue, dlq, clock=clock)
    return d, RetryWorker(d, small_queue, clock=clock)


@pytest.mark.asyncio
async def test_retry_with_full_queue_is_dead_lettered(store, warehouse, dlq, small_queue, cramped, clock):
    d, w = cramped
    await store.save_record(completed_record("u1", "r1"))
    await store.save_record(completed_record("u1", "r2"))
    warehouse.fail_first_n = 1
    await d.sync_record("u1", "r1")
    (task,) = await small_queue.due(clock.advance(seconds=1))
    await d.schedule_retry(SESSIONS_TABLE, "u1", "r2", attempt_count=0, now=clock())

    warehouse.fail_first_n = 1
    assert await w.process(task, clock()) == Outcome.RETRYABLE

    rec = await store.get_record("u1", "r1")
    assert rec.sync_status == SyncStatus.ABANDONED
    assert rec.sync_retry_count == 1
    entry = dlq.get(KEY)
    assert entry.status == DeadLetterStatus.ABANDONED
    assert entry.retryable is True
    assert "retry queue full" in entry.failure_reason
    assert KEY not in small_queue


@pytest.mark.asyncio
async def test_crashed_task_with_full_queue_is_dead_lettered(store, warehouse, dlq, small_queue, cramped, clock):
    d, w = cramped
    await store.save_record(completed_record("u1", "r1"))
    await store.save_record(completed_record("u1", "r2"))
    warehouse.fail_first_n = 1
    await d.sync_record("u1", "r1")

    async def crowd_then_crash(*args):
        await d.schedule_retry(SESSIONS_TABLE, "u1", "r2", attempt_count=0, now=clock())
        raise RuntimeError("unexpected")

    d.attempt = crowd_then_crash
    clock.advance(seconds=1)
    assert await w.drain_due() == 1

    assert (await store.get_record("u1", "r1")).sync_status == SyncStatus.ABANDONED
    assert dlq.get(KEY).status == DeadLetterStatus.ABANDONED
    assert (SESSIONS_TABLE, "u1", "r2") in small_queue
