"""
Right-to-erasure.

``ErasureService`` is the subject-facing side: it files a request with a
grace period and cancels it while that is still possible. ``DeletionScheduler``
sweeps due requests and runs the erasure sequence:

    (a) delete the subject's records        <- point of no return
    (b) delete the subject profile
    (c) delete warehouse rows for every pseudonym the subject may carry
    (d) delete the identity entry
    (e) verify nothing is left, then mark the request completed

The request is claimed (``irreversible_at``) atomically before (a): a cancel
either lands first and nothing is touched, or is refused. Every step is
idempotent, so a failure anywhere leaves the request ``pending`` and the next
run replays the whole sequence. Each step writes one audit entry.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from loguru import logger
from warehouse_client import TABLE_PRESETS

from .audit import AuditLog
from .errors import (
    ErasureNotCancellableError,
    ErasureStepError,
    UnknownSubjectError,
)
from .metrics import ERASURE_RUN_REQUESTS, ERASURE_STEPS_TOTAL
from .models import AuditEntry, ErasureRequest, ErasureStatus, utc_now
from .pseudonymizer import Pseudonymizer
from .store import IdentityStore, OperationalStore

STEP_RECORDS = "delete_records"
STEP_PROFILE = "delete_profile"
STEP_WAREHOUSE = "delete_warehouse_rows"
STEP_IDENTITY = "delete_identity"
STEP_VERIFY = "verify_deletion"
STEP_COMPLETE = "complete"


class ErasureService:
    def __init__(
        self,
        store: OperationalStore,
        *,
        grace_period_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.grace_period = timedelta(days=grace_period_days)
        self.clock = clock

    async def request_erasure(
        self, subject_id: str, now: Optional[datetime] = None
    ) -> ErasureRequest:
        """File a pending request; the subject's data is frozen from here on."""
        now = now or self.clock()
        if await self.store.get_profile(subject_id) is None:
            raise UnknownSubjectError(f"no subject {subject_id!r}")
        request = ErasureRequest(
            subject_id=subject_id,
            requested_at=now,
            scheduled_deletion_date=now + self.grace_period,
        )
        stored = await self.store.create_erasure_request(request)
        logger.info(
            f"Erasure request {stored.id} filed, due {stored.scheduled_deletion_date.isoformat()}"
        )
        return stored

    async def cancel_erasure(
        self, request_id: str, now: Optional[datetime] = None
    ) -> ErasureRequest:
        now = now or self.clock()
        rejected: list[str] = []

        def mutate(current: ErasureRequest) -> Optional[dict]:
            if current.status == ErasureStatus.CANCELLED:
                return None
            if current.status != ErasureStatus.PENDING:
                rejected.append(f"request is {current.status.value}")
                return None
            if current.irreversible_at is not None:
                rejected.append("erasure already past the point of no return")
                return None
            return {"status": ErasureStatus.CANCELLED, "cancelled_at": now}

        updated = await self.store.update_erasure_request(request_id, mutate)
        if updated is None:
            raise LookupError(f"no erasure request {request_id!r}")
        if rejected:
            raise ErasureNotCancellableError(rejected[0])
        logger.info(f"Erasure request {request_id} cancelled")
        return updated


@dataclass
class RunSummary:
    due: int = 0
    completed: int = 0
    pending: int = 0
    skipped: int = 0
    duration_s: float = 0.0
    outcomes: dict[str, ErasureStatus] = field(default_factory=dict)


class DeletionScheduler:
    def __init__(
        self,
        store: OperationalStore,
        identities: IdentityStore,
        warehouse,
        pseudonymizer: Pseudonymizer,
        audit: AuditLog,
        *,
        batch_limit: int = 100,
        interval_sec: float = 86400.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.identities = identities
        self.warehouse = warehouse
        self.pseudonymizer = pseudonymizer
        self.audit = audit
        self.batch_limit = batch_limit
        self.interval_sec = interval_sec
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    async def run_once(self, now: Optional[datetime] = None) -> RunSummary:
        """Process up to ``batch_limit`` due requests; the rest roll over."""
        now = now or self.clock()
        t0 = time.perf_counter()
        due = await self.store.due_erasure_requests(now, self.batch_limit)
        summary = RunSummary(due=len(due))
        for request in due:
            status = await self.process_request(request, now)
            summary.outcomes[request.id] = status
            if status == ErasureStatus.COMPLETED:
                summary.completed += 1
            elif status == ErasureStatus.PENDING:
                summary.pending += 1
            else:
                summary.skipped += 1
        summary.duration_s = time.perf_counter() - t0
        ERASURE_RUN_REQUESTS.observe(len(due))
        logger.info(
            f"Deletion run: {summary.completed} completed, {summary.pending} left pending, "
            f"{summary.skipped} skipped in {summary.duration_s:.2f}s"
        )
        return summary

    async def process_request(
        self, request: ErasureRequest, now: Optional[datetime] = None
    ) -> ErasureStatus:
        """Run the erasure sequence for one request and return its resulting status."""
        now = now or self.clock()
        subject_id = request.subject_id
        pseudonyms = self.pseudonymizer.candidates(subject_id, now)
        pseudonym = pseudonyms[0]

        async def audit(step: str, outcome: str, detail: Optional[str] = None) -> None:
            ERASURE_STEPS_TOTAL.labels(step=step, outcome=outcome).inc()
            await self.audit.append(
                AuditEntry(
                    pseudonym=pseudonym,
                    request_id=request.id,
                    step=step,
                    outcome=outcome,
                    timestamp=self.clock(),
                    detail=detail,
                )
            )

        async def run_step(step: str, action: Callable[[], Awaitable[str]]) -> None:
            try:
                detail = await action()
            except Exception as exc:
                await audit(step, "failed", str(exc))
                raise ErasureStepError(f"{step}: {exc}") from exc
            await audit(step, "ok", detail)

        fresh = await self.store.get_erasure_request(request.id)
        if fresh is None:
            await audit(STEP_RECORDS, "skipped", "request is missing")
            logger.warning(f"Erasure request {request.id} disappeared; skipped")
            return request.status
        if fresh.status != ErasureStatus.PENDING:
            await audit(STEP_RECORDS, "skipped", f"request is {fresh.status.value}")
            logger.info(f"Erasure request {request.id} no longer pending; skipped")
            return fresh.status

        async def delete_records() -> str:
            n = await self.store.delete_records(subject_id)
            return f"{n} records"

        async def delete_profile() -> str:
            removed = await self.store.delete_profile(subject_id)
            return "removed" if removed else "absent"

        async def delete_warehouse_rows() -> str:
            deleted = 0
            for table, preset in TABLE_PRESETS.items():
                col = preset["pseudonym_col"]
                for p in pseudonyms:
                    deleted += await self.warehouse.delete(table, {col: p})
            remaining = 0
            for table, preset in TABLE_PRESETS.items():
                col = preset["pseudonym_col"]
                for p in pseudonyms:
                    remaining += await self.warehouse.count(table, {col: p})
            if remaining:
                raise ErasureStepError(f"{remaining} warehouse rows remain after delete")
            return f"{deleted} rows"

        async def delete_identity() -> str:
            removed = await self.identities.delete(subject_id)
            return "removed" if removed else "absent"

        async def verify_deletion() -> str:
            leftovers = []
            if await self.store.list_records(subject_id):
                leftovers.append("records")
            if await self.store.get_profile(subject_id) is not None:
                leftovers.append("profile")
            if await self.identities.get(subject_id) is not None:
                leftovers.append("identity")
            for table, preset in TABLE_PRESETS.items():
                col = preset["pseudonym_col"]
                for p in pseudonyms:
                    if await self.warehouse.count(table, {col: p}):
                        leftovers.append(table)
                        break
            if leftovers:
                raise ErasureStepError(f"data remains after erasure: {', '.join(leftovers)}")
            return "nothing left"

        try:
            claimed = await self._claim(request.id, now)
            if claimed.status != ErasureStatus.PENDING:
                await audit(STEP_RECORDS, "skipped", f"request is {claimed.status.value}")
                logger.info(f"Erasure request {request.id} cancelled before it ran")
                return claimed.status
            await run_step(STEP_RECORDS, delete_records)

            await self._require_pending(request.id)
            await run_step(STEP_PROFILE, delete_profile)

            await self._require_pending(request.id)
            await run_step(STEP_WAREHOUSE, delete_warehouse_rows)

            await self._require_pending(request.id)
            await run_step(STEP_IDENTITY, delete_identity)

            await run_step(STEP_VERIFY, verify_deletion)
            done = await self._complete(request.id, now)
        except Exception as exc:
            await self._leave_pending(request.id, str(exc))
            logger.error(f"Erasure request {request.id} left pending: {exc}")
            return ErasureStatus.PENDING

        await audit(STEP_COMPLETE, "completed")
        logger.success(f"Erasure request {request.id} completed")
        return done.status

    async def _claim(self, request_id: str, now: datetime) -> ErasureRequest:
        """Mark the request irreversible if it is still pending. Re-claims are no-ops."""

        def mutate(current: ErasureRequest) -> Optional[dict]:
            if current.status != ErasureStatus.PENDING or current.irreversible_at is not None:
                return None
            return {"irreversible_at": now}

        claimed = await self.store.update_erasure_request(request_id, mutate)
        if claimed is None:
            raise ErasureStepError("erasure request disappeared")
        return claimed

    async def _require_pending(self, request_id: str) -> None:
        fresh = await self.store.get_erasure_request(request_id)
        if fresh is None or fresh.status != ErasureStatus.PENDING:
            raise ErasureStepError("erasure request is no longer pending")

    async def _complete(self, request_id: str, now: datetime) -> ErasureRequest:
        def mutate(current: ErasureRequest) -> Optional[dict]:
            if current.status != ErasureStatus.PENDING:
                return None
            return {"status": ErasureStatus.COMPLETED, "completed_at": now, "last_error": None}

        done = await self.store.update_erasure_request(request_id, mutate)
        if done is None or done.status != ErasureStatus.COMPLETED:
            raise ErasureStepError("could not mark erasure request completed")
        return done

    async def _leave_pending(self, request_id: str, error: str) -> None:
        def mutate(current: ErasureRequest) -> Optional[dict]:
            if current.status != ErasureStatus.PENDING:
                return None
            return {"last_error": error}

        await self.store.update_erasure_request(request_id, mutate)

    # ---------- periodic loop ----------

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run(), name="deletion-scheduler")

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None

    @property
    def alive(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        logger.debug(f"Deletion scheduler started (every {self.interval_sec}s)")
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                logger.exception(f"Deletion run failed: {exc}")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_sec)
            except asyncio.TimeoutError:
                pass
        logger.debug("Deletion scheduler stopped")
