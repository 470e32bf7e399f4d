"""
Unit tests for pipeline metrics (light sanity checks).
"""

import pytest
from prometheus_client import REGISTRY

from conftest import completed_record
from subject_sync.metrics import metrics_registry


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.mark.asyncio
async def test_dispatch_and_dead_letter_counters(store, warehouse, wired):
    synced_before = _sample(
        "subject_sync_attempts_total", table="training_sessions", path="dispatch", outcome="synced"
    )
    abandoned_before = _sample(
        "subject_sync_dlq_transitions_total", table="training_sessions", status="abandoned"
    )

    await store.save_record(completed_record("u1", "r1"))
    await store.save_record(completed_record("u1", "r2", completed_at=None))

    assert (
        _sample("subject_sync_attempts_total", table="training_sessions", path="dispatch", outcome="synced")
        == synced_before + 1
    )
    assert (
        _sample("subject_sync_dlq_transitions_total", table="training_sessions", status="abandoned")
        == abandoned_before + 1
    )


def test_registry_exposes_collectors():
    assert metrics_registry.sync_attempts_total is not None
    assert metrics_registry.retry_queue_depth is not None
    assert metrics_registry.erasure_steps_total is not None
