"""Reward engine tables.

Creates the completion feed table (owned by the grading subsystem; created
here only if absent), the point event log, aggregates, levels,
achievements, leaderboard snapshots, reward jobs and the reward outbox.

Revision ID: 001_reward_tables
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_reward_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Completion feed ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS activity_completions (
            id BIGSERIAL PRIMARY KEY,
            student_id VARCHAR(64) NOT NULL,
            source VARCHAR(32) NOT NULL DEFAULT 'ACTIVITY',
            source_id VARCHAR(128) NOT NULL,
            activity_type VARCHAR(64) NOT NULL,
            difficulty VARCHAR(32),
            score DOUBLE PRECISION,
            max_score DOUBLE PRECISION,
            class_id VARCHAR(64),
            subject_id VARCHAR(64),
            course_id VARCHAR(64),
            campus_id VARCHAR(64),
            completed_at TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_completions_completed_at
        ON activity_completions(completed_at)
    """)

    # --- Point events ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS point_events (
            id BIGSERIAL PRIMARY KEY,
            student_id VARCHAR(64) NOT NULL,
            amount INTEGER NOT NULL,
            source VARCHAR(32) NOT NULL,
            source_id VARCHAR(128) NOT NULL,
            class_id VARCHAR(64),
            subject_id VARCHAR(64),
            course_id VARCHAR(64),
            campus_id VARCHAR(64),
            description VARCHAR(256),
            is_correction BOOLEAN NOT NULL DEFAULT false,
            idempotency_key VARCHAR(256) UNIQUE,
            created_at TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_point_events_student_created
        ON point_events(student_id, created_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_point_events_source
        ON point_events(student_id, source, source_id)
    """)

    # --- Aggregates ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS points_aggregates (
            id BIGSERIAL PRIMARY KEY,
            student_id VARCHAR(64) NOT NULL,
            scope_kind VARCHAR(16) NOT NULL,
            scope_id VARCHAR(64) NOT NULL,
            period_type VARCHAR(16) NOT NULL,
            period_key VARCHAR(16) NOT NULL,
            total BIGINT NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT points_aggregates_key
                UNIQUE(student_id, scope_kind, scope_id, period_type, period_key)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_aggregates_board
        ON points_aggregates(scope_kind, scope_id, period_type, period_key)
    """)

    # --- Levels ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS student_levels (
            id BIGSERIAL PRIMARY KEY,
            student_id VARCHAR(64) NOT NULL,
            scope_kind VARCHAR(16) NOT NULL,
            scope_id VARCHAR(64) NOT NULL,
            level INTEGER NOT NULL DEFAULT 1,
            current_experience BIGINT NOT NULL DEFAULT 0,
            experience_for_next_level BIGINT NOT NULL DEFAULT 0,
            total_experience BIGINT NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT student_levels_key UNIQUE(student_id, scope_kind, scope_id)
        )
    """)

    # --- Achievements ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievement_definitions (
            id SERIAL PRIMARY KEY,
            slug VARCHAR(64) UNIQUE NOT NULL,
            title VARCHAR(128) NOT NULL,
            description TEXT NOT NULL,
            icon VARCHAR(64),
            criterion VARCHAR(32) NOT NULL,
            activity_type VARCHAR(64),
            source VARCHAR(32),
            scope_kind VARCHAR(16),
            target INTEGER NOT NULL,
            increment INTEGER NOT NULL DEFAULT 1,
            sort_order INTEGER NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT true
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievement_progress (
            id BIGSERIAL PRIMARY KEY,
            student_id VARCHAR(64) NOT NULL,
            definition_id INTEGER NOT NULL REFERENCES achievement_definitions(id) ON DELETE CASCADE,
            scope_kind VARCHAR(16) NOT NULL,
            scope_id VARCHAR(64) NOT NULL,
            progress INTEGER NOT NULL DEFAULT 0,
            target INTEGER NOT NULL,
            unlocked BOOLEAN NOT NULL DEFAULT false,
            unlocked_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT achievement_progress_key
                UNIQUE(student_id, definition_id, scope_kind, scope_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_achievement_progress_unlocked
        ON achievement_progress(student_id, unlocked_at)
    """)

    # --- Leaderboard snapshots ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS leaderboard_snapshots (
            id BIGSERIAL PRIMARY KEY,
            entity_type VARCHAR(16) NOT NULL,
            entity_id VARCHAR(64) NOT NULL,
            period_type VARCHAR(16) NOT NULL,
            period_key VARCHAR(16) NOT NULL,
            generated_at TIMESTAMPTZ NOT NULL,
            total_entries INTEGER NOT NULL DEFAULT 0,
            entries JSONB NOT NULL,
            CONSTRAINT leaderboard_snapshots_key
                UNIQUE(entity_type, entity_id, period_type, generated_at)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_snapshots_latest
        ON leaderboard_snapshots(entity_type, entity_id, period_type, generated_at)
    """)

    # --- Reward jobs ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS reward_jobs (
            id BIGSERIAL PRIMARY KEY,
            idempotency_key VARCHAR(256) UNIQUE NOT NULL,
            completion_id BIGINT,
            status VARCHAR(16) NOT NULL DEFAULT 'PENDING',
            attempts INTEGER NOT NULL DEFAULT 0,
            next_attempt_at TIMESTAMPTZ,
            locked_until TIMESTAMPTZ,
            locked_by VARCHAR(64),
            last_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_reward_jobs_status
        ON reward_jobs(status, next_attempt_at)
    """)

    # --- Outbox ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS reward_outbox (
            id BIGSERIAL PRIMARY KEY,
            student_id VARCHAR(64) NOT NULL,
            kind VARCHAR(32) NOT NULL,
            payload JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL,
            delivered_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_reward_outbox_pending
        ON reward_outbox(delivered_at, id)
    """)


def downgrade() -> None:
    for table in [
        "reward_outbox",
        "reward_jobs",
        "leaderboard_snapshots",
        "achievement_progress",
        "achievement_definitions",
        "student_levels",
        "points_aggregates",
        "point_events",
    ]:
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")  # noqa: S608
