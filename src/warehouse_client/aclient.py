from __future__ import annotations

from typing import Any, Iterable, Mapping, Sequence, TypedDict

import psycopg
from psycopg import sql as psql
from psycopg_pool import AsyncConnectionPool

from .errors import map_db_error
from .sql import TABLE_PRESETS, count_statement, delete_statement, upsert_statement


class AsyncWarehouseConfig(TypedDict, total=False):
    dsn: str
    app_name: str
    statement_timeout_ms: int
    pool_max: int


DEFAULTS: AsyncWarehouseConfig = {
    "pool_max": 10,
    "app_name": "subject-sync",
}


def coerce_rows(table: str, rows: Iterable[object]) -> list[dict]:
    """Normalize models/dicts into full-width column dicts for a table preset.

    Missing columns become None so every row binds every placeholder.
    """
    cols = TABLE_PRESETS[table]["cols"]
    out: list[dict] = []
    for r in rows:
        if r is None:
            continue
        if hasattr(r, "model_dump"):
            data = r.model_dump()
        elif isinstance(r, Mapping):
            data = dict(r)
        else:
            data = vars(r)
        out.append({c: data.get(c) for c in cols})
    return out


class AsyncWarehouse:
    """Async PostgreSQL warehouse client.

    Every write is an idempotent upsert keyed by the table preset's conflict
    columns, so re-delivering a row overwrites rather than duplicates it.
    Driver exceptions are translated with ``map_db_error``.
    """

    def __init__(self, cfg: AsyncWarehouseConfig):
        self.cfg: AsyncWarehouseConfig = {**DEFAULTS, **(cfg or {})}
        if "dsn" not in self.cfg:
            raise ValueError("dsn required")
        self.pool = AsyncConnectionPool(
            conninfo=self.cfg["dsn"],
            max_size=self.cfg["pool_max"],
            kwargs={"autocommit": False},
            open=False,
        )
        self.statement_timeout_ms = self.cfg.get("statement_timeout_ms")
        self.app_name = self.cfg.get("app_name")

    async def open(self) -> None:
        await self.pool.open()

    async def aclose(self) -> None:
        await self.pool.close()

    async def _conn(self):
        async with self.pool.connection() as conn:
            if self.app_name:
                await conn.execute(
                    psql.SQL("SET application_name = {}").format(psql.Literal(self.app_name))
                )
            if self.statement_timeout_ms:
                await conn.execute(
                    psql.SQL("SET statement_timeout = {}").format(
                        psql.Literal(int(self.statement_timeout_ms))
                    )
                )
            yield conn

    # ---------- health ----------

    async def health(self) -> bool:
        try:
            async for conn in self._conn():
                await conn.execute("SELECT 1")
                return True
        except psycopg.Error:
            return False
        return False

    # ---------- writes ----------

    async def upsert(self, table: str, rows: Sequence[object]) -> int:
        preset = TABLE_PRESETS[table]
        stmt = upsert_statement(table, preset["cols"], preset["conflict"], preset["update"])
        data = coerce_rows(table, rows)
        if not data:
            return 0
        try:
            async for conn in self._conn():
                async with conn.cursor() as cur:
                    await cur.executemany(stmt, data)
                await conn.commit()
        except psycopg.Error as e:
            raise map_db_error(e) from e
        return len(data)

    async def delete(self, table: str, predicate: Mapping[str, Any]) -> int:
        stmt = delete_statement(table, predicate)
        try:
            async for conn in self._conn():
                async with conn.cursor() as cur:
                    await cur.execute(stmt, dict(predicate))
                    deleted = cur.rowcount
                await conn.commit()
                return max(deleted, 0)
        except psycopg.Error as e:
            raise map_db_error(e) from e
        return 0

    # ---------- reads ----------

    async def count(self, table: str, predicate: Mapping[str, Any]) -> int:
        stmt = count_statement(table, predicate)
        try:
            async for conn in self._conn():
                cur = await conn.execute(stmt, dict(predicate))
                row = await cur.fetchone()
                return int(row[0]) if row else 0
        except psycopg.Error as e:
            raise map_db_error(e) from e
        return 0
