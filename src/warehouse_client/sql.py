from __future__ import annotations

from typing import Any, Mapping, Sequence

from psycopg import sql as psql

# Canonical column sets + conflict/update specs (match migrations/versions)
TABLE_PRESETS: dict[str, dict] = {
    "training_sessions": {
        "cols": [
            "user_hash",
            "session_id",
            "exercise_type",
            "rep_count",
            "total_score",
            "average_score",
            "duration_seconds",
            "average_fps",
            "device_platform",
            "device_model",
            "app_version",
            "region",
            "started_at",
            "completed_at",
            "created_at",
            "salt_version",
        ],
        "conflict": ["user_hash", "session_id"],
        "update": [
            "exercise_type",
            "rep_count",
            "total_score",
            "average_score",
            "duration_seconds",
            "average_fps",
            "device_platform",
            "device_model",
            "app_version",
            "region",
            "started_at",
            "completed_at",
            "created_at",
            "salt_version",
        ],
        "pseudonym_col": "user_hash",
    },
    "subjects_anonymized": {
        "cols": [
            "user_hash",
            "birth_year_range",
            "gender",
            "fitness_level",
            "region",
            "created_at",
            "salt_version",
        ],
        "conflict": ["user_hash"],
        "update": [
            "birth_year_range",
            "gender",
            "fitness_level",
            "region",
            "created_at",
            "salt_version",
        ],
        "pseudonym_col": "user_hash",
    },
}


def row_key(table: str, row: Mapping[str, Any]) -> tuple:
    """Conflict-key tuple of a row for the given table."""
    return tuple(row[c] for c in TABLE_PRESETS[table]["conflict"])


def upsert_statement(
    table: str,
    cols: Sequence[str],
    conflict_cols: Sequence[str],
    update_cols: Sequence[str],
) -> psql.Composed:
    """INSERT ... ON CONFLICT ... DO UPDATE with named parameters (%(name)s)."""
    ins_cols = psql.SQL(", ").join(psql.Identifier(c) for c in cols)
    ins_vals = psql.SQL(", ").join(psql.Placeholder(c) for c in cols)
    conflict = psql.SQL(", ").join(psql.Identifier(c) for c in conflict_cols)
    setlist = psql.SQL(", ").join(
        psql.SQL("{} = EXCLUDED.{}").format(psql.Identifier(c), psql.Identifier(c))
        for c in update_cols
    )
    return psql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) DO UPDATE SET {}").format(
        psql.Identifier(table), ins_cols, ins_vals, conflict, setlist
    )


def _where(predicate: Mapping[str, Any]) -> psql.Composable:
    if not predicate:
        # Refuse unbounded deletes/counts; an empty predicate is always a caller bug.
        raise ValueError("predicate must name at least one column")
    return psql.SQL(" AND ").join(
        psql.SQL("{} = {}").format(psql.Identifier(k), psql.Placeholder(k)) for k in predicate
    )


def delete_statement(table: str, predicate: Mapping[str, Any]) -> psql.Composed:
    """DELETE FROM table WHERE col = %(col)s AND ... (equality predicate only)."""
    if table not in TABLE_PRESETS:
        raise KeyError(f"unknown warehouse table {table!r}")
    return psql.SQL("DELETE FROM {} WHERE {}").format(psql.Identifier(table), _where(predicate))


def count_statement(table: str, predicate: Mapping[str, Any]) -> psql.Composed:
    if table not in TABLE_PRESETS:
        raise KeyError(f"unknown warehouse table {table!r}")
    return psql.SQL("SELECT COUNT(*) FROM {} WHERE {}").format(
        psql.Identifier(table), _where(predicate)
    )
