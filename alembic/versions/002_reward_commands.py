"""Operator commands on the reward job queue.

Manual point adjustments and achievement resets are enqueued as
reward_jobs rows with a kind and a JSON payload, and applied by the
reward worker like completions.

Revision ID: 002_reward_commands
Revises: 001_reward_tables
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "002_reward_commands"
down_revision: str | None = "001_reward_tables"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.execute("""
        ALTER TABLE reward_jobs
        ADD COLUMN IF NOT EXISTS kind VARCHAR(32) NOT NULL DEFAULT 'COMPLETION'
    """)
    op.execute("""
        ALTER TABLE reward_jobs
        ADD COLUMN IF NOT EXISTS payload JSONB
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_reward_jobs_commands
        ON reward_jobs (kind, status, id)
        WHERE kind <> 'COMPLETION'
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS idx_reward_jobs_commands")
    op.execute("ALTER TABLE reward_jobs DROP COLUMN IF EXISTS payload")
    op.execute("ALTER TABLE reward_jobs DROP COLUMN IF EXISTS kind")
