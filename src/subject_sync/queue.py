from __future__ import annotations

import asyncio
import heapq
import itertools
import uuid
from datetime import datetime
from typing import Optional

from loguru import logger

from .errors import QueueFullError
from .models import RetryTask

TaskKey = tuple[str, str, str]


class RetryQueue:
    """Delay queue of RetryTasks ordered by ``next_eligible_time``.

    At most one live task per (table, subject, record): enqueueing a task
    whose key is already queued replaces it. ``due(now)`` hands eligible
    tasks to the caller (they are in flight until re-enqueued or dropped).
    Operations never await while mutating, so they are atomic on one loop.
    """

    def __init__(
        self,
        capacity: int = 100_000,
        high_watermark: int | None = None,
        low_watermark: int | None = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._capacity = capacity
        self._high_wm = (
            high_watermark if high_watermark is not None else max(1, int(0.8 * capacity))
        )
        self._low_wm = low_watermark if low_watermark is not None else int(0.5 * capacity)
        self._high_fired = False

        self._live: dict[TaskKey, tuple[str, RetryTask]] = {}
        self._heap: list[tuple[datetime, int, TaskKey, str]] = []
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return len(self._live)

    def __contains__(self, key: TaskKey) -> bool:
        return key in self._live

    def get(self, key: TaskKey) -> Optional[RetryTask]:
        entry = self._live.get(key)
        return entry[1] if entry else None

    async def enqueue(self, task: RetryTask, not_before: datetime | None = None) -> str:
        """Schedule ``task`` to become eligible at ``not_before``; returns a handle."""
        if not_before is not None:
            task = task.model_copy(update={"next_eligible_time": not_before})
        key = task.key
        if key not in self._live and len(self._live) >= self._capacity:
            raise QueueFullError(f"retry queue is full ({self._capacity})")

        handle = uuid.uuid4().hex
        self._live[key] = (handle, task)
        heapq.heappush(self._heap, (task.next_eligible_time, next(self._seq), key, handle))
        self._maybe_signal_high()
        self._wakeup.set()
        return handle

    def remove(self, key: TaskKey) -> bool:
        removed = self._live.pop(key, None) is not None
        if removed:
            self._maybe_signal_low()
        return removed

    def next_eligible(self) -> Optional[datetime]:
        self._discard_stale()
        return self._heap[0][0] if self._heap else None

    async def due(self, now: datetime, limit: int | None = None) -> list[RetryTask]:
        """Pop every task eligible at ``now`` (oldest first)."""
        out: list[RetryTask] = []
        while self._heap and (limit is None or len(out) < limit):
            self._discard_stale()
            if not self._heap or self._heap[0][0] > now:
                break
            _, _, key, _ = heapq.heappop(self._heap)
            _, task = self._live.pop(key)
            out.append(task)
        if out:
            self._maybe_signal_low()
        return out

    async def wait(self, timeout: float) -> None:
        """Sleep up to ``timeout`` seconds or until something is enqueued."""
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=max(timeout, 0.0))
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    def wake(self) -> None:
        self._wakeup.set()

    def _discard_stale(self) -> None:
        # Heap entries superseded by a re-enqueue (or removed) are dropped lazily.
        while self._heap:
            _, _, key, handle = self._heap[0]
            live = self._live.get(key)
            if live is not None and live[0] == handle:
                return
            heapq.heappop(self._heap)

    def _maybe_signal_high(self) -> None:
        if not self._high_fired and self.size >= self._high_wm:
            self._high_fired = True
            logger.warning(f"Retry queue above high watermark ({self.size}/{self._capacity})")

    def _maybe_signal_low(self) -> None:
        if self._high_fired and self.size <= self._low_wm:
            self._high_fired = False
            logger.info(f"Retry queue recovered below low watermark ({self.size}/{self._capacity})")
