"""Initial warehouse schema for subject-sync

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18

"""

from alembic import op

# revision identifiers, used by Alembic
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One row per completed training session, keyed by subject pseudonym
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS training_sessions (
            user_hash        TEXT NOT NULL,
            session_id       TEXT NOT NULL,
            exercise_type    TEXT NOT NULL,
            rep_count        INTEGER NOT NULL DEFAULT 0,
            total_score      DOUBLE PRECISION NOT NULL DEFAULT 0,
            average_score    DOUBLE PRECISION NOT NULL DEFAULT 0,
            duration_seconds INTEGER NOT NULL DEFAULT 0,
            average_fps      DOUBLE PRECISION NOT NULL DEFAULT 0,
            device_platform  TEXT NOT NULL,
            device_model     TEXT NOT NULL,
            app_version      TEXT NOT NULL,
            region           TEXT NOT NULL,
            started_at       TIMESTAMPTZ,
            completed_at     TIMESTAMPTZ NOT NULL,
            created_at       TIMESTAMPTZ NOT NULL,
            salt_version     TEXT NOT NULL,
            PRIMARY KEY (user_hash, session_id)
        );
    """
    )

    # Time-range scans for analytics; pseudonym lookups use the primary key
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_training_sessions_completed_at
            ON training_sessions (completed_at DESC);
    """
    )

    # One generalized row per subject
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS subjects_anonymized (
            user_hash        TEXT PRIMARY KEY,
            birth_year_range TEXT NOT NULL,
            gender           TEXT NOT NULL,
            fitness_level    TEXT NOT NULL,
            region           TEXT NOT NULL,
            created_at       TIMESTAMPTZ,
            salt_version     TEXT NOT NULL
        );
    """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS subjects_anonymized CASCADE")
    op.execute("DROP TABLE IF EXISTS training_sessions CASCADE")
