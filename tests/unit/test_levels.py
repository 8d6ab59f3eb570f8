"""Level curve unit tests."""

from __future__ import annotations

import pytest

from classpoints.rewards.levels import derive_level, level_threshold


class TestLevelThreshold:
    """threshold(n) = round(100 * (n - 1) ** 1.5)."""

    @pytest.mark.parametrize(
        ("level", "expected"),
        [(1, 0), (2, 100), (3, 283), (4, 520), (5, 800)],
    )
    def test_thresholds(self, level, expected):
        assert level_threshold(level) == expected

    def test_monotonic(self):
        thresholds = [level_threshold(n) for n in range(1, 50)]
        assert thresholds == sorted(thresholds)
        assert len(set(thresholds)) == len(thresholds)

    def test_custom_curve(self):
        assert level_threshold(3, base=50, exponent=1.0) == 100


class TestDeriveLevel:
    """Level derivation from cumulative experience."""

    def test_zero_experience(self):
        info = derive_level(0)
        assert info.level == 1
        assert info.current_experience == 0
        assert info.experience_for_next_level == 100
        assert info.total_experience == 0

    def test_just_below_threshold(self):
        assert derive_level(99).level == 1

    def test_exact_threshold(self):
        info = derive_level(100)
        assert info.level == 2
        assert info.current_experience == 0
        assert info.experience_for_next_level == 183

    def test_mid_level(self):
        info = derive_level(400)
        assert info.level == 3
        assert info.current_experience == 117
        assert info.experience_for_next_level == 237

    def test_cap(self):
        """Levels stop at the cap; the bar keeps the last span."""
        info = derive_level(10**9, cap=5)
        assert info.level == 5
        assert info.experience_for_next_level == 280
        assert info.total_experience == 10**9

    def test_negative_total_stays_level_one(self):
        info = derive_level(-30)
        assert info.level == 1
        assert info.current_experience == 0

    def test_idempotent(self):
        assert derive_level(1234) == derive_level(1234)
