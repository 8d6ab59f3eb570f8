"""ORM models for the reward engine.

Writers per table:
  activity_completions   grading subsystem (read-only here)
  point_events, points_aggregates, student_levels,
  achievement_progress, reward_outbox   reward worker
  reward_jobs            reward worker; the ops API only enqueues commands
  leaderboard_snapshots  leaderboard snapshot engine
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
    text,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from classpoints.db.base import Base, BigIntPK, JSONType


# ---------------------------------------------------------------------------
# Completion feed (external)
# ---------------------------------------------------------------------------


class ActivityCompletion(Base):
    """Completed/graded activities written by the grading subsystem."""

    __tablename__ = "activity_completions"
    __table_args__ = (
        Index("idx_completions_completed_at", "completed_at"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False, server_default="ACTIVITY")
    source_id: Mapped[str] = mapped_column(String(128), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    difficulty: Mapped[str | None] = mapped_column(String(32), nullable=True)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    class_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    subject_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    course_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    campus_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Event log
# ---------------------------------------------------------------------------


class PointEvent(Base):
    """Append-only point award log. UNIQUE idempotency_key gives exactly-once awards.

    Corrective events carry a NULL key so they never collide with the
    original award they supersede.
    """

    __tablename__ = "point_events"
    __table_args__ = (
        Index("idx_point_events_student_created", "student_id", "created_at"),
        Index("idx_point_events_source", "student_id", "source", "source_id"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str] = mapped_column(String(128), nullable=False)
    class_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    subject_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    course_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    campus_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    is_correction: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false(), default=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(256), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Aggregates and levels
# ---------------------------------------------------------------------------


class PointsAggregate(Base):
    """Running total per (student, scope, period). Mutated only by upsert-increment."""

    __tablename__ = "points_aggregates"
    __table_args__ = (
        UniqueConstraint(
            "student_id", "scope_kind", "scope_id", "period_type", "period_key",
            name="points_aggregates_key",
        ),
        Index("idx_aggregates_board", "scope_kind", "scope_id", "period_type", "period_key"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    scope_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_type: Mapped[str] = mapped_column(String(16), nullable=False)
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    total: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StudentLevel(Base):
    """Level per (student, scope), re-derived from the ALL_TIME aggregate."""

    __tablename__ = "student_levels"
    __table_args__ = (
        UniqueConstraint("student_id", "scope_kind", "scope_id", name="student_levels_key"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    scope_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")
    current_experience: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default="0")
    experience_for_next_level: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default="0")
    total_experience: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------


class AchievementDefinition(Base):
    """Declarative achievement criteria, seeded on startup."""

    __tablename__ = "achievement_definitions"
    __table_args__ = {"extend_existing": True}  # noqa: RUF012

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    icon: Mapped[str | None] = mapped_column(String(64), nullable=True)
    criterion: Mapped[str] = mapped_column(String(32), nullable=False)
    activity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    scope_kind: Mapped[str | None] = mapped_column(String(16), nullable=True)
    target: Mapped[int] = mapped_column(Integer, nullable=False)
    increment: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1", default=1)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=true(), default=True)


class AchievementProgress(Base):
    """Progress towards one achievement. ``unlocked`` never reverts."""

    __tablename__ = "achievement_progress"
    __table_args__ = (
        UniqueConstraint(
            "student_id", "definition_id", "scope_kind", "scope_id",
            name="achievement_progress_key",
        ),
        Index("idx_achievement_progress_unlocked", "student_id", "unlocked_at"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    definition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("achievement_definitions.id", ondelete="CASCADE"), nullable=False,
    )
    scope_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    target: Mapped[int] = mapped_column(Integer, nullable=False)
    unlocked: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false(), default=False)
    unlocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    definition: Mapped[AchievementDefinition] = relationship("AchievementDefinition", lazy="joined")


# ---------------------------------------------------------------------------
# Leaderboards
# ---------------------------------------------------------------------------


class LeaderboardSnapshot(Base):
    """Immutable ranked view of one (entity, period type) at ``generated_at``."""

    __tablename__ = "leaderboard_snapshots"
    __table_args__ = (
        UniqueConstraint(
            "entity_type", "entity_id", "period_type", "generated_at",
            name="leaderboard_snapshots_key",
        ),
        Index("idx_snapshots_latest", "entity_type", "entity_id", "period_type", "generated_at"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_type: Mapped[str] = mapped_column(String(16), nullable=False)
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_entries: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    entries: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False)


# ---------------------------------------------------------------------------
# Worker bookkeeping
# ---------------------------------------------------------------------------


class RewardJob(Base):
    """Unit-of-work state for one completion (keyed like its point event) or operator command."""

    __tablename__ = "reward_jobs"
    __table_args__ = (
        Index("idx_reward_jobs_status", "status", "next_attempt_at"),
        Index(
            "idx_reward_jobs_commands", "kind", "status", "id",
            postgresql_where=text("kind <> 'COMPLETION'"),
        ),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    idempotency_key: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, server_default="COMPLETION", default="COMPLETION")
    completion_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, server_default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class RewardOutbox(Base):
    """Typed award/unlock/level-up records awaiting notification delivery."""

    __tablename__ = "reward_outbox"
    __table_args__ = (
        Index("idx_reward_outbox_pending", "delivered_at", "id"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
