"""
Pytest configuration and fixtures for subject-sync.

Time is injected everywhere through ``Clock`` so retry and grace-period
tests never sleep on real backoff delays.
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone

import pytest

from subject_sync.dispatcher import SyncDispatcher
from subject_sync.dlq import DeadLetterStore
from subject_sync.feed import ChangeFeed
from subject_sync.models import Record, RecordState, SessionMetadata, SubjectProfile
from subject_sync.policy import RetryPolicy
from subject_sync.pseudonymizer import Pseudonymizer, SaltConfig
from subject_sync.queue import RetryQueue
from subject_sync.store import InMemoryIdentityStore, InMemoryOperationalStore
from subject_sync.worker import RetryWorker
from warehouse_client import InMemoryWarehouse

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FlakyWarehouse(InMemoryWarehouse):
    """Warehouse whose upserts fail the first N times, then behave."""

    def __init__(self, fail_first_n: int = 0, error: Exception | None = None):
        super().__init__()
        self.fail_first_n = fail_first_n
        self.error = error or TimeoutError("warehouse timeout")
        self.upsert_calls = 0

    async def upsert(self, table, rows):
        self.upsert_calls += 1
        if self.fail_first_n > 0:
            self.fail_first_n -= 1
            raise self.error
        return await super().upsert(table, rows)


def completed_record(subject_id: str, record_id: str, **overrides) -> Record:
    data = dict(
        id=record_id,
        subject_id=subject_id,
        state=RecordState.COMPLETED,
        exercise_type="squat",
        rep_count=12,
        total_score=960.0,
        average_score=80.0,
        duration_seconds=95,
        started_at=T0 - timedelta(minutes=2),
        completed_at=T0,
        created_at=T0 - timedelta(minutes=2),
        metadata=SessionMetadata(
            platform="iOS", device_model="iPhone14,2", average_fps=29.5, app_version="1.4.0"
        ),
    )
    data.update(overrides)
    return Record(**data)


def profile(subject_id: str, **overrides) -> SubjectProfile:
    data = dict(
        subject_id=subject_id,
        email=f"{subject_id}@example.com",
        display_name="Taro",
        avatar_url="https://cdn.example.com/a.png",
        last_ip="203.0.113.7",
        birth_year=1991,
        gender="male",
        fitness_level="beginner",
        created_at=T0 - timedelta(days=90),
    )
    data.update(overrides)
    return SubjectProfile(**data)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def pseudonymizer():
    return Pseudonymizer(SaltConfig(salt=b"test-salt", version="v1"))


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def store(feed):
    return InMemoryOperationalStore(feed)


@pytest.fixture
def identities():
    return InMemoryIdentityStore()


@pytest.fixture
def warehouse():
    return FlakyWarehouse()


@pytest.fixture
def queue():
    return RetryQueue(capacity=1000)


@pytest.fixture
def dlq():
    return DeadLetterStore()


@pytest.fixture
def dispatcher(store, warehouse, pseudonymizer, queue, dlq, clock):
    return SyncDispatcher(
        store, warehouse, pseudonymizer, queue, dlq, policy=RetryPolicy(), clock=clock
    )


@pytest.fixture
def worker(dispatcher, queue, clock):
    return RetryWorker(dispatcher, queue, workers=4, table_concurrency=2, clock=clock)


@pytest.fixture
def wired(feed, dispatcher):
    """Dispatcher subscribed to the store's change feed (handled inline)."""
    feed.subscribe(dispatcher.handle_change)
    return dispatcher
