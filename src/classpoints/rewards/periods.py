"""Period key and boundary utilities.

Every aggregate row is keyed by a period key derived from the event's
``created_at`` in UTC:

    DAY       2026-02-23
    WEEK      2026-W09   (ISO year + ISO week, %G-W%V)
    MONTH     2026-02
    TERM      2026-T1    (terms start on the configured months)
    ALL_TIME  all
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

from classpoints.config import get_settings
from classpoints.rewards.types import PeriodType

ALL_TIME_KEY = "all"


def as_utc(dt: datetime) -> datetime:
    """Normalize to an aware UTC datetime. Naive values are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def get_week_iso(dt: datetime) -> str:
    """Get ISO week string e.g. '2026-W09'. Uses %G-W%V (ISO year + ISO week)."""
    return dt.strftime("%G-W%V")


def get_monday(dt: datetime | date) -> date:
    """Get the Monday of the ISO week containing dt."""
    d = dt.date() if isinstance(dt, datetime) else dt
    return d - timedelta(days=d.weekday())


def _term_starts(term_start_months: list[int] | None) -> list[int]:
    months = sorted(set(term_start_months or get_settings().term_start_months))
    if not months or any(m < 1 or m > 12 for m in months):
        msg = f"Invalid term start months: {term_start_months}"
        raise ValueError(msg)
    return months


def get_term(dt: datetime, term_start_months: list[int] | None = None) -> tuple[int, int]:
    """Return (academic year, term number) for dt.

    A date before the first term start of the calendar year belongs to the
    last term of the previous year.
    """
    months = _term_starts(term_start_months)
    year = dt.year
    term = 0
    for idx, month in enumerate(months, start=1):
        if dt.month >= month:
            term = idx
    if term == 0:
        return year - 1, len(months)
    return year, term


def period_key(period_type: PeriodType, dt: datetime, term_start_months: list[int] | None = None) -> str:
    """Compute the aggregate period key for a timestamp."""
    dt = as_utc(dt)
    if period_type == PeriodType.DAY:
        return dt.strftime("%Y-%m-%d")
    if period_type == PeriodType.WEEK:
        return get_week_iso(dt)
    if period_type == PeriodType.MONTH:
        return dt.strftime("%Y-%m")
    if period_type == PeriodType.TERM:
        year, term = get_term(dt, term_start_months)
        return f"{year}-T{term}"
    if period_type == PeriodType.ALL_TIME:
        return ALL_TIME_KEY
    raise ValueError(f"Unknown period: {period_type}")


def period_bounds(
    period_type: PeriodType,
    key: str,
    term_start_months: list[int] | None = None,
) -> tuple[datetime | None, datetime | None]:
    """Half-open [start, end) UTC window for a period key. ALL_TIME is unbounded."""
    if period_type == PeriodType.ALL_TIME:
        return None, None

    if period_type == PeriodType.DAY:
        day = date.fromisoformat(key)
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        return start, start + timedelta(days=1)

    if period_type == PeriodType.WEEK:
        monday = datetime.strptime(key + "-1", "%G-W%V-%u").date()
        start = datetime.combine(monday, time.min, tzinfo=timezone.utc)
        return start, start + timedelta(weeks=1)

    if period_type == PeriodType.MONTH:
        year, month = (int(part) for part in key.split("-"))
        start = datetime(year, month, 1, tzinfo=timezone.utc)
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc) if month == 12 else datetime(
            year, month + 1, 1, tzinfo=timezone.utc,
        )
        return start, end

    if period_type == PeriodType.TERM:
        months = _term_starts(term_start_months)
        year_part, term_part = key.split("-T")
        year, term = int(year_part), int(term_part)
        if term < 1 or term > len(months):
            raise ValueError(f"Invalid term key: {key}")
        start = datetime(year, months[term - 1], 1, tzinfo=timezone.utc)
        if term < len(months):
            end = datetime(year, months[term], 1, tzinfo=timezone.utc)
        else:
            end = datetime(year + 1, months[0], 1, tzinfo=timezone.utc)
        return start, end

    raise ValueError(f"Unknown period: {period_type}")


def current_period_keys(now: datetime | None = None) -> dict[PeriodType, str]:
    """Period keys for every granularity at ``now``."""
    if now is None:
        now = datetime.now(timezone.utc)
    return {pt: period_key(pt, now) for pt in PeriodType}


def calculate_percentile(rank: int, total: int) -> float:
    """Calculate percentile from rank and total participants.

    Rank 1 out of 100 -> 99.0 (top 1%)
    Rank 100 out of 100 -> 0.0 (bottom)
    """
    if total <= 0 or rank <= 0:
        return 0.0
    return round(100 - (rank / total * 100), 2)
