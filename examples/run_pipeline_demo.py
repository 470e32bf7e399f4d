"""
Demo of the subject sync pipeline against the in-memory warehouse.

Shows edge-triggered sync, a transient warehouse failure recovered by the
retry worker, and an erasure request carried out by the deletion scheduler.
"""

import asyncio
from datetime import timedelta

from loguru import logger
from pydantic import SecretStr

from subject_sync import (
    Identity,
    Record,
    RecordState,
    SessionMetadata,
    SubjectProfile,
    SyncPipeline,
    SyncSettings,
)
from subject_sync.models import utc_now
from warehouse_client import InMemoryWarehouse


class FlakyWarehouse(InMemoryWarehouse):
    """Fails the first upsert to show the retry path."""

    def __init__(self):
        super().__init__()
        self._failed = False

    async def upsert(self, table, rows):
        if not self._failed:
            self._failed = True
            raise TimeoutError("warehouse temporarily unavailable")
        return await super().upsert(table, rows)


class Clock:
    def __init__(self):
        self.now = utc_now()

    def __call__(self):
        return self.now


async def main():
    clock = Clock()
    warehouse = FlakyWarehouse()
    settings = SyncSettings(pseudonym_salt=SecretStr("demo-salt"), _env_file=None)

    async with SyncPipeline.from_settings(settings, warehouse=warehouse, clock=clock) as pipeline:
        store = pipeline.store
        await pipeline.identities.put(Identity(subject_id="u42", email="u42@example.com"))
        await store.save_profile(
            SubjectProfile(subject_id="u42", email="u42@example.com", birth_year=1988, gender="female")
        )

        logger.info("🚀 Completing three training sessions")
        for i in range(3):
            await store.save_record(
                Record(
                    id=f"session-{i}",
                    subject_id="u42",
                    state=RecordState.COMPLETED,
                    exercise_type="pushup",
                    rep_count=10 + i,
                    completed_at=clock(),
                    metadata=SessionMetadata(platform="android", device_model="Pixel 8"),
                )
            )
        await pipeline.wait_idle()
        logger.info(f"Health after first pass: {await pipeline.health()}")

        clock.now += timedelta(seconds=1)
        await pipeline.worker.drain_due()
        for table, rows in warehouse.tables.items():
            logger.info(f"{table}: {len(rows)} rows")

        request = await pipeline.erasures.request_erasure("u42")
        logger.info(f"Erasure due {request.scheduled_deletion_date:%Y-%m-%d}")
        clock.now = request.scheduled_deletion_date
        summary = await pipeline.scheduler.run_once()
        logger.success(f"Deletion run: {summary.completed} completed")
        for entry in pipeline.audit.entries():
            logger.info(f"audit {entry.pseudonym[:12]} {entry.step} {entry.outcome}")


if __name__ == "__main__":
    asyncio.run(main())
