from __future__ import annotations

from datetime import datetime
from functools import lru_cache
from typing import Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseSettings):
    """Environment-driven configuration (prefix ``SUBJECT_SYNC_``)."""

    # pseudonymization
    pseudonym_salt: Optional[SecretStr] = None
    salt_version: str = "v1"
    previous_salt: Optional[SecretStr] = None
    previous_salt_version: Optional[str] = None
    rotation_window_until: Optional[datetime] = None

    # warehouse
    warehouse_dsn: Optional[str] = None
    warehouse_pool_max: int = 10
    warehouse_statement_timeout_ms: int = 30_000

    # retry
    max_attempts: int = 10
    backoff_floor_ms: int = 1_000
    backoff_ceiling_ms: int = 3_600_000
    backoff_multiplier: float = 2.0
    retry_workers: int = 8
    table_concurrency: int = 4
    retry_poll_sec: float = 1.0
    retry_queue_capacity: int = 100_000

    # erasure
    deletion_interval_sec: float = 86_400.0
    deletion_batch_limit: int = 100
    grace_period_days: int = 30

    # durable logs (in-memory when unset)
    dlq_path: Optional[str] = None
    audit_path: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="SUBJECT_SYNC_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> SyncSettings:
    return SyncSettings()
