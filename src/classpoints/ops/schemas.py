"""Request/response models for operational endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from classpoints.rewards.types import PeriodType, PointSource, ScopeKind


class RepairRequest(BaseModel):
    student_id: str
    scope_kind: ScopeKind = ScopeKind.GLOBAL
    scope_id: str = "all"
    period_type: PeriodType
    period_key: str


class RepairResponse(BaseModel):
    student_id: str
    scope_kind: str
    scope_id: str
    period_type: str
    period_key: str
    previous_total: int
    total: int


class JobResponse(BaseModel):
    id: int
    idempotency_key: str
    kind: str
    status: str
    attempts: int
    last_error: str | None = None


class CommandResponse(JobResponse):
    """A queued operator command. ``duplicate`` means it was already queued."""

    duplicate: bool = False


class AdjustPointsRequest(BaseModel):
    student_id: str
    amount: int
    source: PointSource = PointSource.MANUAL_ADJUSTMENT
    source_id: str = Field(..., min_length=1, max_length=128)
    class_id: str | None = None
    subject_id: str | None = None
    course_id: str | None = None
    campus_id: str | None = None
    description: str | None = Field(None, max_length=256)
    correction: bool = False


class ResetProgressRequest(BaseModel):
    student_id: str
    slug: str
    scope_kind: ScopeKind | None = None
    scope_id: str | None = None


class OutboxRecordResponse(BaseModel):
    id: int
    student_id: str
    kind: str
    payload: dict


class AckRequest(BaseModel):
    ids: list[int]
