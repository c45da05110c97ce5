"""
impact_pool/period.py — Quarterly funding periods and mid-quarter proration.

Periods are calendar quarters identified as ``"YYYY-Qn"``. A library approved
part-way through a quarter receives a prorated share of its score for that
quarter:

    proration = (quarter_end − approved_at) / (quarter_end − quarter_start)

clamped to [0, 1], so a library approved before the quarter starts is not
prorated and one approved after it ends receives nothing.
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union

_PERIOD_RE = re.compile(r"^(\d{4})-Q([1-4])$")


def current_period(now: Optional[datetime] = None) -> str:
    """Return the ``YYYY-Qn`` id of the quarter containing *now* (UTC)."""
    now = now or datetime.now(tz=timezone.utc)
    return f"{now.year}-Q{(now.month - 1) // 3 + 1}"


def parse_period(period: str) -> tuple[int, int]:
    """Split ``"2025-Q3"`` into ``(2025, 3)``; raises ValueError otherwise."""
    match = _PERIOD_RE.match(period.strip())
    if not match:
        raise ValueError(f"Invalid period id: {period!r} (expected YYYY-Qn)")
    return int(match.group(1)), int(match.group(2))


def previous_period(period: str) -> str:
    """Return the quarter immediately before *period*."""
    year, quarter = parse_period(period)
    if quarter == 1:
        return f"{year - 1}-Q4"
    return f"{year}-Q{quarter - 1}"


def quarter_bounds(period: str) -> tuple[date, date]:
    """Return (first day, last day) of the quarter, both inclusive."""
    year, quarter = parse_period(period)
    start = date(year, 3 * (quarter - 1) + 1, 1)
    if quarter == 4:
        next_start = date(year + 1, 1, 1)
    else:
        next_start = date(year, 3 * quarter + 1, 1)
    return start, next_start - timedelta(days=1)


def proration_factor(approved_at: Optional[Union[date, datetime]], period: str) -> float:
    """Fraction of *period* during which the library was approved.

    Returns 1.0 when approved_at is None or on/before the quarter start,
    0.0 when it falls after the quarter end.
    """
    if approved_at is None:
        return 1.0
    if isinstance(approved_at, datetime):
        approved_at = approved_at.date()

    start, end = quarter_bounds(period)
    if approved_at <= start:
        return 1.0
    if approved_at > end:
        return 0.0

    total_days = (end - start).days
    remaining_days = (end - approved_at).days
    return max(0.0, min(1.0, remaining_days / total_days))
