from __future__ import annotations

from calendar import monthrange
from datetime import date, datetime
from typing import AbstractSet, List

from balance_tracker.finance_items import ExpensePeriod, IncomePeriod

SUPPORTED_PERIODS = frozenset(IncomePeriod.values)
EXPENSE_PERIODS = frozenset(ExpensePeriod.values)
PERIOD_MONTHS = {"monthly": 1, "yearly": 12}


class InvalidRecurrenceInput(ValueError):
    """Raised when an anchor date or period cannot be expanded."""


def expand(
    anchor_date: date | str,
    period: str,
    target_date: date,
    allowed_periods: AbstractSet[str] = SUPPORTED_PERIODS,
) -> List[date]:
    """Return every occurrence of a recurring item on or before ``target_date``.

    Monthly and yearly occurrences keep the anchor's day of month, clamped
    to the last day of shorter months. The clamp is always computed from the
    anchor, so a 31st anchor returns to the 31st after a short month.
    """
    anchor = parse_anchor_date(anchor_date)
    normalized_period = validate_period(period, allowed_periods)

    if anchor > target_date:
        return []
    if normalized_period == "once":
        return [anchor]

    month_increment = PERIOD_MONTHS[normalized_period]
    occurrences: List[date] = []
    month_offset = 0
    current_date = anchor
    while current_date <= target_date:
        occurrences.append(current_date)
        month_offset += month_increment
        current_date = _add_months(anchor, month_offset, anchor.day)

    return occurrences


def validate_period(period: str, allowed_periods: AbstractSet[str] = SUPPORTED_PERIODS) -> str:
    if not isinstance(period, str):
        raise InvalidRecurrenceInput(f"Unsupported period: {period!r}")
    normalized = period.strip().lower()
    if normalized not in allowed_periods:
        raise InvalidRecurrenceInput(
            f"Period {normalized!r} must be one of {', '.join(sorted(allowed_periods))}."
        )
    return normalized


def parse_anchor_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise InvalidRecurrenceInput(f"Unsupported anchor date: {value!r}")
    try:
        # Timestamps such as "2024-05-01T00:00:00Z" keep only their date part.
        return datetime.strptime(value.strip()[:10], "%Y-%m-%d").date()
    except ValueError as exc:
        raise InvalidRecurrenceInput("Anchor date must be in YYYY-MM-DD format.") from exc


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)
