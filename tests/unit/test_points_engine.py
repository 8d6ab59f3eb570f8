"""Points engine unit tests: base values, cognitive multipliers, score scaling."""

from __future__ import annotations

from decimal import Decimal

from classpoints.rewards.points_engine import (
    BASE_POINTS,
    base_points_for,
    compute_points,
    difficulty_multiplier,
)
from classpoints.rewards.types import Completion


def _completion(**overrides) -> Completion:
    values = {"student_id": "stu-1", "source_id": "act-1", "activity_type": "QUIZ"}
    values.update(overrides)
    return Completion(**values)


class TestBasePoints:
    """Base value lookup."""

    def test_known_types(self):
        assert base_points_for("QUIZ") == 15
        assert base_points_for("ESSAY") == 25
        assert base_points_for("READING") == 5

    def test_lookup_is_normalized(self):
        """Case, spaces and dashes do not matter."""
        assert base_points_for("quiz") == 15
        assert base_points_for("drag-and-drop") == BASE_POINTS["DRAG_AND_DROP"]
        assert base_points_for("Fill in the blanks") == BASE_POINTS["FILL_IN_THE_BLANKS"]

    def test_unknown_type_uses_default(self):
        """A missing mapping never blocks the award."""
        assert base_points_for("INTERPRETIVE_DANCE") == 10

    def test_custom_table(self):
        assert base_points_for("QUIZ", {"QUIZ": 40}) == 40


class TestDifficultyMultiplier:
    """Cognitive-level multipliers."""

    def test_levels(self):
        assert difficulty_multiplier("REMEMBER") == Decimal("1.0")
        assert difficulty_multiplier("apply") == Decimal("1.2")
        assert difficulty_multiplier("CREATE") == Decimal("1.5")

    def test_missing_or_unknown_is_neutral(self):
        assert difficulty_multiplier(None) == Decimal("1.0")
        assert difficulty_multiplier("GUESS") == Decimal("1.0")


class TestComputePoints:
    """Full award computation."""

    def test_plain_quiz(self):
        assert compute_points(_completion()) == 15

    def test_multiplier_rounds_half_up(self):
        """15 * 1.5 = 22.5 rounds to 23."""
        assert compute_points(_completion(difficulty="CREATE")) == 23

    def test_score_scaling(self):
        assert compute_points(_completion(score=8, max_score=10)) == 12

    def test_score_above_max_is_capped(self):
        assert compute_points(_completion(score=12, max_score=10)) == 15

    def test_zero_score_earns_nothing(self):
        assert compute_points(_completion(score=0, max_score=10)) == 0

    def test_tiny_nonzero_score_earns_one_point(self):
        assert compute_points(_completion(score=0.01, max_score=100)) == 1

    def test_never_negative(self):
        assert compute_points(_completion(score=-5, max_score=10)) == 0

    def test_score_without_max_is_ignored(self):
        assert compute_points(_completion(score=3)) == 15

    def test_deterministic(self):
        completion = _completion(activity_type="ESSAY", difficulty="ANALYZE", score=7, max_score=9)
        assert compute_points(completion) == compute_points(completion)
