"""Period key and boundary unit tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from classpoints.rewards.periods import (
    calculate_percentile,
    get_term,
    period_bounds,
    period_key,
)
from classpoints.rewards.types import PeriodType

NOW = datetime(2026, 9, 15, 10, 30, tzinfo=timezone.utc)


class TestPeriodKey:
    """Keys per granularity."""

    def test_keys(self):
        assert period_key(PeriodType.DAY, NOW) == "2026-09-15"
        assert period_key(PeriodType.WEEK, NOW) == "2026-W38"
        assert period_key(PeriodType.MONTH, NOW) == "2026-09"
        assert period_key(PeriodType.TERM, NOW) == "2026-T3"
        assert period_key(PeriodType.ALL_TIME, NOW) == "all"

    def test_iso_week_crosses_year(self):
        """Jan 1 2027 (Friday) belongs to ISO week 53 of 2026."""
        assert period_key(PeriodType.WEEK, datetime(2027, 1, 1, tzinfo=timezone.utc)) == "2026-W53"
        assert period_key(PeriodType.WEEK, datetime(2025, 12, 29, tzinfo=timezone.utc)) == "2026-W01"

    def test_naive_is_utc(self):
        assert period_key(PeriodType.DAY, datetime(2026, 9, 15, 23, 59)) == "2026-09-15"

    def test_offset_converted_to_utc(self):
        local = datetime(2026, 9, 15, 22, 0, tzinfo=timezone(timedelta(hours=-5)))
        assert period_key(PeriodType.DAY, local) == "2026-09-16"


class TestTerms:
    """Academic terms from configured start months."""

    def test_default_terms(self):
        assert get_term(datetime(2026, 2, 10, tzinfo=timezone.utc)) == (2026, 1)
        assert get_term(datetime(2026, 5, 1, tzinfo=timezone.utc)) == (2026, 2)
        assert get_term(datetime(2026, 12, 31, tzinfo=timezone.utc)) == (2026, 3)

    def test_before_first_start_is_previous_year(self):
        assert get_term(datetime(2026, 1, 15, tzinfo=timezone.utc), [2, 9]) == (2025, 2)

    def test_invalid_months(self):
        with pytest.raises(ValueError):
            get_term(NOW, [0, 13])


class TestPeriodBounds:
    """Half-open [start, end) windows."""

    def test_day(self):
        start, end = period_bounds(PeriodType.DAY, "2026-09-15")
        assert start == datetime(2026, 9, 15, tzinfo=timezone.utc)
        assert end - start == timedelta(days=1)

    def test_week(self):
        start, end = period_bounds(PeriodType.WEEK, "2026-W38")
        assert start == datetime(2026, 9, 14, tzinfo=timezone.utc)
        assert end == datetime(2026, 9, 21, tzinfo=timezone.utc)

    def test_december(self):
        start, end = period_bounds(PeriodType.MONTH, "2026-12")
        assert start == datetime(2026, 12, 1, tzinfo=timezone.utc)
        assert end == datetime(2027, 1, 1, tzinfo=timezone.utc)

    def test_last_term_wraps(self):
        start, end = period_bounds(PeriodType.TERM, "2026-T3")
        assert start == datetime(2026, 9, 1, tzinfo=timezone.utc)
        assert end == datetime(2027, 1, 1, tzinfo=timezone.utc)

    def test_all_time_unbounded(self):
        assert period_bounds(PeriodType.ALL_TIME, "all") == (None, None)

    def test_key_falls_inside_its_bounds(self):
        for period_type in (PeriodType.DAY, PeriodType.WEEK, PeriodType.MONTH, PeriodType.TERM):
            start, end = period_bounds(period_type, period_key(period_type, NOW))
            assert start <= NOW < end


class TestPercentile:
    def test_percentile(self):
        assert calculate_percentile(1, 100) == 99.0
        assert calculate_percentile(100, 100) == 0.0
        assert calculate_percentile(1, 0) == 0.0
