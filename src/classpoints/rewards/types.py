"""Shared reward types: sources, scopes, periods, job states.

Scopes are a tagged pair (kind, id). Every organizational boundary a point
can be aggregated under is enumerated in ScopeKind; GLOBAL is the student's
institution-wide bucket and always has the id ``"all"``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class PointSource(str, Enum):
    """Where a point award came from."""

    ACTIVITY = "ACTIVITY"
    ASSESSMENT = "ASSESSMENT"
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"
    BONUS = "BONUS"


class ScopeKind(str, Enum):
    """Organizational boundary for aggregation and ranking."""

    CLASS = "CLASS"
    SUBJECT = "SUBJECT"
    COURSE = "COURSE"
    CAMPUS = "CAMPUS"
    GLOBAL = "GLOBAL"


class PeriodType(str, Enum):
    """Time bucket for point totals."""

    DAY = "DAY"
    WEEK = "WEEK"
    MONTH = "MONTH"
    TERM = "TERM"
    ALL_TIME = "ALL_TIME"


class JobStatus(str, Enum):
    """Reward job lifecycle: PENDING -> PROCESSING -> DONE | FAILED | DEAD."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"
    DEAD = "DEAD"


class JobKind(str, Enum):
    """What a reward job applies: a completion or an operator command."""

    COMPLETION = "COMPLETION"
    POINTS_ADJUSTMENT = "POINTS_ADJUSTMENT"
    ACHIEVEMENT_RESET = "ACHIEVEMENT_RESET"


class OutboxKind(str, Enum):
    """Typed reward notifications for the notification subsystem."""

    POINTS_AWARDED = "POINTS_AWARDED"
    ACHIEVEMENT_UNLOCKED = "ACHIEVEMENT_UNLOCKED"
    LEVEL_UP = "LEVEL_UP"


GLOBAL_SCOPE_ID = "all"


@dataclass(frozen=True)
class Scope:
    """A tagged scope identifier, e.g. Scope(ScopeKind.CLASS, "class-7b")."""

    kind: ScopeKind
    id: str

    @classmethod
    def global_(cls) -> Scope:
        return cls(ScopeKind.GLOBAL, GLOBAL_SCOPE_ID)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


GLOBAL_SCOPE = Scope.global_()


@dataclass(frozen=True)
class ScopeIds:
    """Scope ids denormalized onto a completion or a point event."""

    class_id: str | None = None
    subject_id: str | None = None
    course_id: str | None = None
    campus_id: str | None = None

    def scopes(self) -> list[Scope]:
        """Expand into tagged scopes, GLOBAL first. Missing ids are skipped."""
        result = [GLOBAL_SCOPE]
        for kind, scope_id in (
            (ScopeKind.CLASS, self.class_id),
            (ScopeKind.SUBJECT, self.subject_id),
            (ScopeKind.COURSE, self.course_id),
            (ScopeKind.CAMPUS, self.campus_id),
        ):
            if scope_id:
                result.append(Scope(kind, scope_id))
        return result


class Completion(BaseModel):
    """An "activity completed / graded" record from the grading subsystem."""

    id: int | None = None
    student_id: str
    source: PointSource = PointSource.ACTIVITY
    source_id: str
    activity_type: str
    difficulty: str | None = None
    score: float | None = None
    max_score: float | None = None
    class_id: str | None = None
    subject_id: str | None = None
    course_id: str | None = None
    campus_id: str | None = None
    completed_at: datetime | None = None
    metadata: dict = Field(default_factory=dict)

    @property
    def scope_ids(self) -> ScopeIds:
        return ScopeIds(
            class_id=self.class_id,
            subject_id=self.subject_id,
            course_id=self.course_id,
            campus_id=self.campus_id,
        )

    @property
    def idempotency_key(self) -> str:
        return build_idempotency_key(self.student_id, self.source, self.source_id)


def build_idempotency_key(student_id: str, source: PointSource | str, source_id: str) -> str:
    """Dedup key for a non-corrective award: ``{student}:{source}:{source_id}``."""
    source_value = source.value if isinstance(source, PointSource) else str(source)
    return f"{student_id}:{source_value}:{source_id}"
