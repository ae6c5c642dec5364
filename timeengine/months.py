from __future__ import annotations

from calendar import monthrange
from datetime import date, datetime, timedelta
from typing import Dict, List, Sequence

WEEKLY_DAYS = 7
SUPPORTED_FREQUENCIES = {"once", "weekly", "monthly", "yearly"}
MONTH_INCREMENTS = {"monthly": 1, "yearly": 12}

MonthKey = str


def to_month_key(value: date | str) -> MonthKey:
    if isinstance(value, date):
        return f"{value.year:04d}-{value.month:02d}"
    return to_month_key(parse_month_value(value))


def parse_month_value(value: str) -> date:
    text = value.strip()
    for fmt in ("%Y-%m", "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date()
    except ValueError as exc:
        raise ValueError("Invalid month format. Use YYYY-MM.") from exc


def month_start(month: MonthKey) -> date:
    return parse_month_value(month).replace(day=1)


def month_end(month: MonthKey) -> date:
    start = month_start(month)
    return start.replace(day=monthrange(start.year, start.month)[1])


def shift_month_key(month: MonthKey, months: int) -> MonthKey:
    start = month_start(month)
    month_index = (start.year * 12 + start.month - 1) + months
    return f"{month_index // 12:04d}-{month_index % 12 + 1:02d}"


def months_between(first: MonthKey, second: MonthKey) -> int:
    a = month_start(first)
    b = month_start(second)
    return (b.year - a.year) * 12 + (b.month - a.month)


def month_range(first: MonthKey, last: MonthKey) -> List[MonthKey]:
    """Inclusive, ordered list of month keys from ``first`` to ``last``."""
    span = months_between(first, last)
    if span < 0:
        raise ValueError("from month must be on or before to month.")
    start = to_month_key(month_start(first))
    return [shift_month_key(start, offset) for offset in range(span + 1)]


def normalize_frequency(value: str) -> str:
    normalized = "".join(ch for ch in value.strip().lower() if ch.isalnum())
    if normalized == "onetime":
        normalized = "once"
    if normalized not in SUPPORTED_FREQUENCIES:
        raise ValueError("Only once, weekly, monthly, or yearly frequencies are supported.")
    return normalized


def expand_occurrences(
    frequency: str,
    start_date: date,
    end_date: date | None,
    months: Sequence[MonthKey],
    *,
    is_active: bool = True,
) -> Dict[MonthKey, List[date]]:
    """Place every occurrence of a rule into the month grid.

    Each grid month maps to the (possibly empty) list of occurrence dates
    falling inside it. Occurrences never leave ``[start_date, end_date]``;
    open-ended rules stop at the last day of the grid.
    """
    expanded: Dict[MonthKey, List[date]] = {month: [] for month in months}
    if not is_active or not months:
        return expanded
    if end_date is not None and end_date < start_date:
        return expanded

    normalized_frequency = normalize_frequency(frequency)
    range_start = month_start(months[0])
    range_end = month_end(months[-1])
    if end_date is not None and end_date < range_end:
        range_end = end_date

    if normalized_frequency == "once":
        if range_start <= start_date <= range_end:
            _place(expanded, start_date)
        return expanded

    if normalized_frequency == "weekly":
        current_date = _first_weekly_on_or_after(start_date, range_start)
        while current_date <= range_end:
            _place(expanded, current_date)
            current_date += timedelta(days=WEEKLY_DAYS)
        return expanded

    month_increment = MONTH_INCREMENTS[normalized_frequency]
    current_date, month_offset = _first_periodic_on_or_after(
        start_date, range_start, month_increment
    )
    while current_date <= range_end:
        _place(expanded, current_date)
        month_offset += month_increment
        current_date = _add_months(start_date, month_offset, start_date.day)
    return expanded


def occurrence_counts(
    frequency: str,
    start_date: date,
    end_date: date | None,
    months: Sequence[MonthKey],
    *,
    is_active: bool = True,
) -> Dict[MonthKey, int]:
    expanded = expand_occurrences(
        frequency, start_date, end_date, months, is_active=is_active
    )
    return {month: len(dates) for month, dates in expanded.items()}


def _place(expanded: Dict[MonthKey, List[date]], value: date) -> None:
    bucket = expanded.get(to_month_key(value))
    if bucket is not None:
        bucket.append(value)


def _first_weekly_on_or_after(start_date: date, minimum_date: date) -> date:
    if start_date >= minimum_date:
        return start_date
    days_between = (minimum_date - start_date).days
    intervals = (days_between + WEEKLY_DAYS - 1) // WEEKLY_DAYS
    return start_date + timedelta(days=WEEKLY_DAYS * intervals)


def _first_periodic_on_or_after(
    start_date: date, minimum_date: date, month_increment: int
) -> tuple[date, int]:
    if start_date >= minimum_date:
        return start_date, 0
    months_between_dates = (minimum_date.year - start_date.year) * 12 + (
        minimum_date.month - start_date.month
    )
    offset = (months_between_dates // month_increment) * month_increment
    candidate = _add_months(start_date, offset, start_date.day)
    while candidate < minimum_date:
        offset += month_increment
        candidate = _add_months(start_date, offset, start_date.day)
    return candidate, offset


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)
