"""Points engine: completion -> point amount. Pure, no I/O.

Base values per activity type and the cognitive-level multipliers follow
the portal's activity registry. Unknown activity types fall back to the
configured default so a missing mapping never blocks grading.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal

from classpoints.config import get_settings
from classpoints.rewards.types import Completion

logger = logging.getLogger(__name__)

DEFAULT_POINTS = 10

BASE_POINTS: dict[str, int] = {
    "QUIZ": 15,
    "MULTIPLE_CHOICE": 10,
    "TRUE_FALSE": 5,
    "FILL_IN_THE_BLANKS": 10,
    "MATCHING": 10,
    "SEQUENCE": 10,
    "DRAG_AND_DROP": 10,
    "FLASH_CARDS": 5,
    "READING": 5,
    "VIDEO": 5,
    "ESSAY": 25,
    "PROJECT": 30,
    "DISCUSSION": 10,
    "ASSESSMENT": 20,
}

# Bloom's taxonomy cognitive levels.
DIFFICULTY_MULTIPLIERS: dict[str, Decimal] = {
    "REMEMBER": Decimal("1.0"),
    "UNDERSTAND": Decimal("1.1"),
    "APPLY": Decimal("1.2"),
    "ANALYZE": Decimal("1.3"),
    "EVALUATE": Decimal("1.4"),
    "CREATE": Decimal("1.5"),
}


def _normalize(value: str) -> str:
    return value.strip().upper().replace("-", "_").replace(" ", "_")


def base_points_for(activity_type: str, table: dict[str, int] | None = None) -> int:
    """Look up the base value for an activity type, falling back to the default."""
    lookup = table if table is not None else BASE_POINTS
    key = _normalize(activity_type or "")
    if key in lookup:
        return lookup[key]
    default = get_settings().default_points
    logger.warning("No point mapping for activity type %r, using default %d", activity_type, default)
    return default


def difficulty_multiplier(difficulty: str | None) -> Decimal:
    """Multiplier for a cognitive level. Unknown or missing levels count as 1.0."""
    if not difficulty:
        return Decimal("1.0")
    return DIFFICULTY_MULTIPLIERS.get(_normalize(difficulty), Decimal("1.0"))


def compute_points(completion: Completion, table: dict[str, int] | None = None) -> int:
    """Compute the award for a normal completion. Always a non-negative int.

    amount = base(activity_type) * multiplier(difficulty) [* score / max_score]

    Score scaling applies only when both score and max_score are present;
    any non-zero score earns at least one point.
    """
    amount = Decimal(base_points_for(completion.activity_type, table))
    amount *= difficulty_multiplier(completion.difficulty)

    if completion.score is not None and completion.max_score:
        ratio = Decimal(str(max(completion.score, 0.0))) / Decimal(str(completion.max_score))
        ratio = min(ratio, Decimal(1))
        scaled = amount * ratio
        if completion.score > 0 and scaled < 1:
            scaled = Decimal(1)
        amount = scaled

    points = int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return max(points, 0)
