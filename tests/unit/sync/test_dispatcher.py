"""
Unit tests for the edge-triggered SyncDispatcher.
"""

from datetime import timedelta
from types import SimpleNamespace

import pytest

from conftest import T0, completed_record, profile
from subject_sync.dispatcher import Outcome, SyncDispatcher
from subject_sync.models import ChangeEvent, DeadLetterStatus, RecordState, SyncStatus
from subject_sync.queue import RetryQueue
from subject_sync.transformer import SESSIONS_TABLE, SUBJECTS_TABLE
from warehouse_client import ConstraintViolation


@pytest.mark.asyncio
async def test_active_record_is_not_synced(store, warehouse, wired):
    await store.save_record(completed_record("u1", "r1", state=RecordState.ACTIVE, completed_at=None))
    assert warehouse.upsert_calls == 0
    rec = await store.get_record("u1", "r1")
    assert rec.sync_status == SyncStatus.UNSYNCED


@pytest.mark.asyncio
async def test_completion_edge_syncs_once(store, warehouse, wired, pseudonymizer):
    active = completed_record("u1", "r1", state=RecordState.ACTIVE, completed_at=None)
    await store.save_record(active)
    await store.save_record(completed_record("u1", "r1"))

    rec = await store.get_record("u1", "r1")
    assert rec.sync_status == SyncStatus.SYNCED
    assert rec.sync_retry_count == 0
    assert rec.synced_at == T0
    rows = warehouse.rows(SESSIONS_TABLE)
    assert len(rows) == 1
    assert rows[0]["user_hash"] == pseudonymizer.pseudonymize("u1")

    # completed -> completed is not an edge
    await store.save_record(completed_record("u1", "r1", rep_count=20))
    assert warehouse.upsert_calls == 1


@pytest.mark.asyncio
async def test_transient_failure_marks_failed_and_schedules_retry(store, warehouse, wired, queue, dlq):
    warehouse.fail_first_n = 1
    await store.save_record(completed_record("u1", "r1"))

    rec = await store.get_record("u1", "r1")
    assert rec.sync_status == SyncStatus.FAILED
    assert rec.sync_retry_count == 0
    assert "warehouse timeout" in rec.sync_error

    key = (SESSIONS_TABLE, "u1", "r1")
    task = queue.get(key)
    assert task.attempt_count == 0
    assert task.next_eligible_time == T0 + timedelta(seconds=1)

    entry = dlq.get(key)
    assert entry.status == DeadLetterStatus.PENDING
    assert entry.retryable is True
    assert warehouse.rows(SESSIONS_TABLE) == []


@pytest.mark.asyncio
async def test_missing_required_field_goes_straight_to_dead_letter(store, wired, queue, dlq):
    await store.save_record(completed_record("u1", "r1", completed_at=None))

    rec = await store.get_record("u1", "r1")
    assert rec.sync_status == SyncStatus.ABANDONED
    assert rec.sync_retry_count == 0
    assert queue.size == 0

    entry = dlq.get((SESSIONS_TABLE, "u1", "r1"))
    assert entry.status == DeadLetterStatus.ABANDONED
    assert entry.retryable is False
    assert entry.attempts == 0
    assert "completed_at" in entry.failure_reason


@pytest.mark.asyncio
async def test_constraint_violation_is_not_retried(store, warehouse, wired, queue, dlq):
    warehouse.fail_first_n = 1
    warehouse.error = ConstraintViolation("value out of range")
    await store.save_record(completed_record("u1", "r1"))

    rec = await store.get_record("u1", "r1")
    assert rec.sync_status == SyncStatus.ABANDONED
    assert queue.size == 0
    assert dlq.get((SESSIONS_TABLE, "u1", "r1")).retryable is False


@pytest.mark.asyncio
async def test_profile_synced_only_when_warehouse_fields_change(store, warehouse, wired):
    await store.save_profile(profile("u1"))
    assert warehouse.upsert_calls == 1
    assert (await store.get_profile("u1")).sync_status == SyncStatus.SYNCED

    # PII-only change never reaches the warehouse
    await store.save_profile(profile("u1", email="new@example.com", display_name="Jiro"))
    assert warehouse.upsert_calls == 1

    await store.save_profile(profile("u1", fitness_level="advanced"))
    assert warehouse.upsert_calls == 2
    (row,) = warehouse.rows(SUBJECTS_TABLE)
    assert row["fitness_level"] == "advanced"


@pytest.mark.asyncio
async def test_duplicate_delivery_leaves_one_row(store, warehouse, dispatcher):
    await store.save_record(completed_record("u1", "r1"))
    for _ in range(3):
        res = await dispatcher.sync_record("u1", "r1")
        assert res.outcome == Outcome.SYNCED
    assert len(warehouse.rows(SESSIONS_TABLE)) == 1


@pytest.mark.asyncio
async def test_resync_pushes_already_synced_record(store, warehouse, wired, dispatcher):
    await store.save_record(completed_record("u1", "r1"))
    res = await dispatcher.resync("u1", "r1")
    assert res.outcome == Outcome.SYNCED
    assert warehouse.upsert_calls == 2


@pytest.mark.asyncio
async def test_sync_profile(store, warehouse, dispatcher):
    await store.save_profile(profile("u1"))
    res = await dispatcher.sync_profile("u1")
    assert res.outcome == Outcome.SYNCED
    assert len(warehouse.rows(SUBJECTS_TABLE)) == 1


@pytest.mark.asyncio
async def test_missing_entity_is_skipped(dispatcher, warehouse, queue):
    res = await dispatcher.sync_record("u1", "ghost")
    assert res.outcome == Outcome.MISSING
    assert warehouse.upsert_calls == 0
    assert queue.size == 0


@pytest.mark.asyncio
async def test_existing_retry_task_is_not_duplicated(store, warehouse, wired, dispatcher, queue):
    warehouse.fail_first_n = 2
    await store.save_record(completed_record("u1", "r1"))
    await dispatcher.resync("u1", "r1")
    assert queue.size == 1
    assert queue.get((SESSIONS_TABLE, "u1", "r1")).attempt_count == 0


@pytest.mark.asyncio
async def test_failure_with_queued_retry_keeps_attempt_count(store, warehouse, dispatcher, queue, dlq):
    await store.save_record(completed_record("u1", "r1"))
    key = (SESSIONS_TABLE, "u1", "r1")
    await dispatcher.schedule_retry(*key, attempt_count=3, now=T0)

    warehouse.fail_first_n = 1
    await dispatcher.sync_record("u1", "r1")

    rec = await store.get_record("u1", "r1")
    assert rec.sync_status == SyncStatus.FAILED
    assert rec.sync_retry_count == 3
    assert queue.get(key).attempt_count == 3
    assert dlq.get(key).attempts == 3


@pytest.mark.asyncio
async def test_full_retry_queue_dead_letters_the_failure(store, warehouse, pseudonymizer, dlq, feed, clock):
    small = RetryQueue(capacity=1)
    feed.subscribe(SyncDispatcher(store, warehouse, pseudonymizer, small, dlq, clock=clock).handle_change)
    warehouse.fail_first_n = 2
    await store.save_record(completed_record("u1", "r1"))
    await store.save_record(completed_record("u1", "r2"))

    assert (SESSIONS_TABLE, "u1", "r1") in small
    rec = await store.get_record("u1", "r2")
    assert rec.sync_status == SyncStatus.ABANDONED
    assert "retry queue full" in rec.sync_error
    entry = dlq.get((SESSIONS_TABLE, "u1", "r2"))
    assert entry.status == DeadLetterStatus.ABANDONED
    assert entry.retryable is True
    assert "warehouse timeout" in entry.failure_reason


@pytest.mark.asyncio
async def test_handle_change_never_raises(warehouse, pseudonymizer, queue, dlq):
    async def boom(*args, **kwargs):
        raise RuntimeError("store down")

    store = SimpleNamespace(get_entity=boom)
    d = SyncDispatcher(store, warehouse, pseudonymizer, queue, dlq)
    event = ChangeEvent(
        kind="record",
        subject_id="u1",
        entity_id="r1",
        before=None,
        after={"state": "completed"},
    )
    await d.handle_change(event)


@pytest.mark.parametrize(
    "before,after,expected",
    [
        (None, {"state": "completed"}, True),
        ({"state": "active"}, {"state": "completed"}, True),
        ({"state": "completed"}, {"state": "completed"}, False),
        ({"state": "active"}, {"state": "active"}, False),
        ({"state": "active"}, {"state": "cancelled"}, False),
        ({"state": "completed"}, None, False),
    ],
)
def test_should_sync_record_edges(before, after, expected):
    ev = ChangeEvent(kind="record", subject_id="u1", entity_id="r1", before=before, after=after)
    assert SyncDispatcher.should_sync(ev) is expected
