"""
Append-only erasure audit log.

Entries carry the subject pseudonym only, so the log itself is exempt from
erasure. With a path, entries are appended as NDJSON lines.
"""

from __future__ import annotations

import asyncio
from collections import deque
from pathlib import Path
from typing import Optional

from .models import AuditEntry


class AuditLog:
    def __init__(self, path: str | Path | None = None, *, mkdirs: bool = True):
        self.path = Path(path) if path is not None else None
        if self.path is not None and mkdirs:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._entries: list[AuditEntry] = []
        self._lock = asyncio.Lock()

    def _append_line(self, line: str) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def append(self, entry: AuditEntry) -> AuditEntry:
        async with self._lock:
            self._entries.append(entry)
            if self.path is not None:
                await asyncio.to_thread(self._append_line, entry.model_dump_json())
        return entry

    def entries(self, pseudonym: Optional[str] = None) -> list[AuditEntry]:
        if pseudonym is None:
            return list(self._entries)
        return [e for e in self._entries if e.pseudonym == pseudonym]


def tail(path: str | Path, n: int = 20) -> list[AuditEntry]:
    """Last ``n`` entries of an NDJSON audit file."""
    p = Path(path)
    if not p.exists():
        return []
    with p.open("r", encoding="utf-8") as f:
        lines = deque((line for line in f if line.strip()), maxlen=n)
    return [AuditEntry.model_validate_json(line) for line in lines]
