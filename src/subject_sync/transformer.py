"""
Schema transformer: operational snapshot -> flat warehouse row.

Transforms are pure. They take a PII-stripped snapshot (see
``pseudonymizer.strip_pii``) and return a dict whose keys follow the table
preset's column order, so the same input always serializes to the same bytes.
"""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any, Callable, Mapping, Optional

from warehouse_client import TABLE_PRESETS

from .errors import TransformError
from .pseudonymizer import Pseudonymizer, birth_year_range, generalize_device_model

SESSIONS_TABLE = "training_sessions"
SUBJECTS_TABLE = "subjects_anonymized"

DEFAULT_REGION = "JP"

Transform = Callable[[Mapping[str, Any], Pseudonymizer], dict]


def _utc(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _require(table: str, data: Mapping[str, Any], *fields: str) -> None:
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise TransformError(table, missing)


def _ordered(table: str, values: Mapping[str, Any]) -> dict:
    return {c: values[c] for c in TABLE_PRESETS[table]["cols"]}


def transform_record(data: Mapping[str, Any], pseudonymizer: Pseudonymizer) -> dict:
    """Map a completed session snapshot to a ``training_sessions`` row."""
    _require(SESSIONS_TABLE, data, "id", "subject_id", "completed_at")
    meta = data.get("metadata") or {}
    return _ordered(
        SESSIONS_TABLE,
        {
            "user_hash": pseudonymizer.pseudonymize(data["subject_id"]),
            "session_id": data["id"],
            "exercise_type": data.get("exercise_type") or "unknown",
            "rep_count": data.get("rep_count") or 0,
            "total_score": float(data.get("total_score") or 0.0),
            "average_score": float(data.get("average_score") or 0.0),
            "duration_seconds": data.get("duration_seconds") or 0,
            "average_fps": float(meta.get("average_fps") or 0.0),
            "device_platform": (meta.get("platform") or "unknown").lower(),
            "device_model": generalize_device_model(meta.get("device_model")),
            "app_version": meta.get("app_version") or "unknown",
            "region": DEFAULT_REGION,
            "started_at": _utc(data.get("started_at")),
            "completed_at": _utc(data["completed_at"]),
            "created_at": _utc(data.get("created_at")) or _utc(data["completed_at"]),
            "salt_version": pseudonymizer.salt_version,
        },
    )


def transform_profile(data: Mapping[str, Any], pseudonymizer: Pseudonymizer) -> dict:
    """Map a subject profile snapshot to a ``subjects_anonymized`` row."""
    _require(SUBJECTS_TABLE, data, "subject_id")
    return _ordered(
        SUBJECTS_TABLE,
        {
            "user_hash": pseudonymizer.pseudonymize(data["subject_id"]),
            "birth_year_range": birth_year_range(data.get("birth_year")),
            "gender": data.get("gender") or "unknown",
            "fitness_level": data.get("fitness_level") or "unknown",
            "region": DEFAULT_REGION,
            "created_at": _utc(data.get("created_at")),
            "salt_version": pseudonymizer.salt_version,
        },
    )


TRANSFORMS: dict[str, Transform] = {
    SESSIONS_TABLE: transform_record,
    SUBJECTS_TABLE: transform_profile,
}


def _json_default(o: Any) -> str:
    if isinstance(o, (datetime, date)):
        return o.isoformat()
    raise TypeError(f"not JSON serializable: {type(o).__name__}")


def canonical_bytes(row: Mapping[str, Any]) -> bytes:
    """Stable serialization used to compare rows across deliveries."""
    return json.dumps(row, default=_json_default, separators=(",", ":")).encode("utf-8")
