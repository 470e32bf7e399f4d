"""
Unit tests for RetryQueue scheduling.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import T0
from subject_sync.errors import QueueFullError
from subject_sync.models import RetryTask
from subject_sync.queue import RetryQueue


def _task(record_id: str, attempt: int = 0, table: str = "training_sessions") -> RetryTask:
    return RetryTask(
        subject_id="u1",
        record_id=record_id,
        target_table=table,
        attempt_count=attempt,
        next_eligible_time=T0,
    )


@pytest.mark.asyncio
async def test_due_returns_only_eligible_tasks_in_time_order():
    q = RetryQueue(capacity=10)
    await q.enqueue(_task("late"), T0 + timedelta(seconds=30))
    await q.enqueue(_task("early"), T0 + timedelta(seconds=1))
    await q.enqueue(_task("mid"), T0 + timedelta(seconds=5))

    assert await q.due(T0) == []
    due = await q.due(T0 + timedelta(seconds=10))
    assert [t.record_id for t in due] == ["early", "mid"]
    assert q.size == 1
    assert q.next_eligible() == T0 + timedelta(seconds=30)


@pytest.mark.asyncio
async def test_reenqueue_replaces_existing_task():
    q = RetryQueue(capacity=10)
    await q.enqueue(_task("r1", attempt=1), T0 + timedelta(seconds=1))
    await q.enqueue(_task("r1", attempt=2), T0 + timedelta(seconds=60))
    assert q.size == 1

    assert await q.due(T0 + timedelta(seconds=5)) == []
    (task,) = await q.due(T0 + timedelta(seconds=60))
    assert task.attempt_count == 2
    assert task.next_eligible_time == T0 + timedelta(seconds=60)


@pytest.mark.asyncio
async def test_remove_drops_task():
    q = RetryQueue(capacity=10)
    t = _task("r1")
    await q.enqueue(t, T0)
    assert t.key in q
    assert q.remove(t.key)
    assert t.key not in q
    assert not q.remove(t.key)
    assert await q.due(T0 + timedelta(days=1)) == []
    assert q.next_eligible() is None


@pytest.mark.asyncio
async def test_capacity_bound():
    q = RetryQueue(capacity=2)
    await q.enqueue(_task("a"), T0)
    await q.enqueue(_task("b"), T0)
    with pytest.raises(QueueFullError):
        await q.enqueue(_task("c"), T0)
    # replacing a live key is still allowed at capacity
    await q.enqueue(_task("a", attempt=3), T0)
    assert q.size == 2


@pytest.mark.asyncio
async def test_same_record_different_tables_are_distinct():
    q = RetryQueue(capacity=10)
    await q.enqueue(_task("u1", table="training_sessions"), T0)
    await q.enqueue(_task("u1", table="subjects_anonymized"), T0)
    assert q.size == 2


@pytest.mark.asyncio
async def test_due_limit():
    q = RetryQueue(capacity=10)
    for i in range(5):
        await q.enqueue(_task(f"r{i}"), T0)
    assert len(await q.due(T0, limit=3)) == 3
    assert q.size == 2


@pytest.mark.asyncio
async def test_wait_returns_on_enqueue():
    q = RetryQueue(capacity=10)
    waiter = asyncio.create_task(q.wait(5.0))
    await asyncio.sleep(0)
    await q.enqueue(_task("r1"), T0)
    await asyncio.wait_for(waiter, timeout=1.0)


def test_invalid_capacity():
    with pytest.raises(ValueError):
        RetryQueue(capacity=0)
