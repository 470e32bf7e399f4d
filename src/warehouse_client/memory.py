from __future__ import annotations

import asyncio
import copy
from typing import Any, Mapping, Sequence

from .aclient import coerce_rows
from .sql import TABLE_PRESETS, row_key


class InMemoryWarehouse:
    """Dict-backed warehouse with the same contract as ``AsyncWarehouse``.

    Rows are stored per table keyed by the preset conflict columns, so
    upserting the same row twice leaves exactly one copy.
    """

    def __init__(self) -> None:
        self.tables: dict[str, dict[tuple, dict]] = {t: {} for t in TABLE_PRESETS}
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        return None

    async def aclose(self) -> None:
        return None

    async def health(self) -> bool:
        return True

    async def upsert(self, table: str, rows: Sequence[object]) -> int:
        data = coerce_rows(table, rows)
        async with self._lock:
            for row in data:
                self.tables[table][row_key(table, row)] = copy.deepcopy(row)
        return len(data)

    async def delete(self, table: str, predicate: Mapping[str, Any]) -> int:
        if not predicate:
            raise ValueError("predicate must name at least one column")
        async with self._lock:
            doomed = [k for k, r in self.tables[table].items() if _matches(r, predicate)]
            for k in doomed:
                del self.tables[table][k]
        return len(doomed)

    async def count(self, table: str, predicate: Mapping[str, Any]) -> int:
        return sum(1 for r in self.tables[table].values() if _matches(r, predicate))

    def rows(self, table: str) -> list[dict]:
        return [copy.deepcopy(r) for r in self.tables[table].values()]


def _matches(row: Mapping[str, Any], predicate: Mapping[str, Any]) -> bool:
    return all(row.get(k) == v for k, v in predicate.items())
