"""Domain exceptions for the reward engine."""

from __future__ import annotations


class RewardError(Exception):
    """Base class for reward engine errors."""


class UnknownScopeError(RewardError):
    """A scope kind that the fan-out does not know how to resolve."""

    def __init__(self, kind: object) -> None:
        super().__init__(f"Unknown scope kind: {kind}")
        self.kind = kind


class JobNotFoundError(RewardError):
    """No reward job with the given id."""

    def __init__(self, job_id: int) -> None:
        super().__init__(f"Reward job {job_id} not found")
        self.job_id = job_id


class UnitTimeoutError(RewardError):
    """A unit's pipeline exceeded its time budget and was rolled back."""
