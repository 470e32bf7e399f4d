"""
Dead-letter store for sync failures.

One entry per (table, subject, record). Entries are never deleted: they move
between pending / resolved / abandoned and stay for audit. With a path, every
state change is appended as an NDJSON line and the latest line per key wins
when the file is reloaded.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Optional

from loguru import logger

from .metrics import DLQ_TRANSITIONS_TOTAL
from .models import DeadLetterEntry, DeadLetterStatus, utc_now

EntryKey = tuple[str, str, str]


class DeadLetterStore:
    def __init__(self, path: str | Path | None = None, *, mkdirs: bool = True):
        self.path = Path(path) if path is not None else None
        if self.path is not None and mkdirs:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._entries: dict[EntryKey, DeadLetterEntry] = {}
        self._lock = asyncio.Lock()
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = DeadLetterEntry.model_validate_json(line)
                except ValueError as exc:
                    logger.warning(f"Skipping corrupt DLQ line {lineno} in {self.path}: {exc}")
                    continue
                self._entries[entry.key] = entry
        logger.debug(f"Loaded {len(self._entries)} dead-letter entries from {self.path}")

    def _append_line(self, line: str) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def _persist(self, entry: DeadLetterEntry) -> None:
        self._entries[entry.key] = entry
        if self.path is not None:
            await asyncio.to_thread(self._append_line, entry.model_dump_json())
        DLQ_TRANSITIONS_TOTAL.labels(table=entry.target_table, status=entry.status.value).inc()

    async def open(
        self,
        *,
        subject_id: str,
        record_id: str,
        target_table: str,
        reason: str,
        retryable: bool = True,
        attempts: int = 0,
        status: DeadLetterStatus = DeadLetterStatus.PENDING,
        now: Optional[datetime] = None,
    ) -> DeadLetterEntry:
        """Open a new entry or update the existing one for this key."""
        now = now or utc_now()
        key = (target_table, subject_id, record_id)
        async with self._lock:
            prev = self._entries.get(key)
            if prev is None:
                entry = DeadLetterEntry(
                    subject_id=subject_id,
                    record_id=record_id,
                    target_table=target_table,
                    failure_reason=reason,
                    status=status,
                    retryable=retryable,
                    attempts=attempts,
                    created_at=now,
                    updated_at=now,
                )
            else:
                entry = prev.model_copy(
                    update={
                        "failure_reason": reason,
                        "status": status,
                        "retryable": retryable,
                        "attempts": attempts,
                        "updated_at": now,
                        "resolved_at": None,
                    }
                )
            await self._persist(entry)
            return entry

    async def _transition(
        self,
        key: EntryKey,
        status: DeadLetterStatus,
        now: Optional[datetime],
        **changes,
    ) -> Optional[DeadLetterEntry]:
        now = now or utc_now()
        async with self._lock:
            prev = self._entries.get(key)
            if prev is None:
                return None
            update = {"status": status, "updated_at": now, **changes}
            if status == DeadLetterStatus.RESOLVED:
                update["resolved_at"] = now
            entry = prev.model_copy(update=update)
            await self._persist(entry)
            return entry

    async def resolve(
        self, key: EntryKey, *, now: Optional[datetime] = None, note: Optional[str] = None
    ) -> Optional[DeadLetterEntry]:
        """Mark resolved. No-op (returns None) when nothing was dead-lettered."""
        existing = self._entries.get(key)
        if existing is None or existing.status == DeadLetterStatus.RESOLVED:
            return existing
        changes = {"failure_reason": note} if note else {}
        return await self._transition(key, DeadLetterStatus.RESOLVED, now, **changes)

    async def abandon(
        self,
        key: EntryKey,
        *,
        reason: str,
        attempts: int,
        retryable: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> Optional[DeadLetterEntry]:
        changes = {"failure_reason": reason, "attempts": attempts}
        if retryable is not None:
            changes["retryable"] = retryable
        return await self._transition(key, DeadLetterStatus.ABANDONED, now, **changes)

    def get(self, key: EntryKey) -> Optional[DeadLetterEntry]:
        return self._entries.get(key)

    def list(self, status: Optional[DeadLetterStatus] = None) -> list[DeadLetterEntry]:
        entries = sorted(self._entries.values(), key=lambda e: e.created_at)
        if status is None:
            return entries
        return [e for e in entries if e.status == status]

    def counts(self) -> dict[str, int]:
        out = {s.value: 0 for s in DeadLetterStatus}
        for e in self._entries.values():
            out[e.status.value] += 1
        return out


def read_entries(path: str | Path) -> list[DeadLetterEntry]:
    """Latest state per key from an NDJSON dead-letter file (for tooling)."""
    return DeadLetterStore(path, mkdirs=False).list()


def dump_entries(entries: list[DeadLetterEntry]) -> str:
    return "\n".join(json.dumps(e.model_dump(mode="json")) for e in entries)
