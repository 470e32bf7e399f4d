"""
Warehouse Client Library

Async access to the append-style analytical warehouse: idempotent upserts
keyed by pseudonym, predicate deletes for erasure, and row counts for
deletion verification.

Usage:
    from warehouse_client import AsyncWarehouse, InMemoryWarehouse

    wh = AsyncWarehouse({"dsn": "postgresql://..."})
    await wh.open()
    await wh.upsert("training_sessions", [row])
    await wh.delete("training_sessions", {"user_hash": pseudonym})
"""

from .aclient import AsyncWarehouse, AsyncWarehouseConfig, coerce_rows
from .errors import (
    ConstraintViolation,
    RetryableError,
    TimeoutExceeded,
    WarehouseError,
    map_db_error,
)
from .memory import InMemoryWarehouse
from .sql import TABLE_PRESETS, row_key

__version__ = "1.0.0"
__all__ = [
    "AsyncWarehouse",
    "AsyncWarehouseConfig",
    "InMemoryWarehouse",
    "TABLE_PRESETS",
    "row_key",
    "coerce_rows",
    "WarehouseError",
    "RetryableError",
    "TimeoutExceeded",
    "ConstraintViolation",
    "map_db_error",
]
