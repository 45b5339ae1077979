"""Calendar-month partitioning of a statement period."""

from __future__ import annotations

import calendar
from datetime import date

from .models import MonthRange


def month_label(day: date) -> str:
    """Return e.g. ``"January 2024"`` (locale independent)."""

    return f"{calendar.month_name[day.month]} {day.year}"


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def partition_months(start: date, end: date) -> list[MonthRange]:
    """Split ``[start, end]`` into one :class:`MonthRange` per calendar month.

    The first range starts on ``start`` and the last ends on ``end``; inner
    ranges cover whole months. Raises ``ValueError`` when ``start > end``.

    >>> [m.label for m in partition_months(date(2024, 1, 15), date(2024, 3, 10))]
    ['January 2024', 'February 2024', 'March 2024']
    """

    if start > end:
        raise ValueError(f"start {start.isoformat()} is after end {end.isoformat()}")

    out: list[MonthRange] = []
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        first = date(year, month, 1)
        last = _month_end(year, month)
        out.append(
            MonthRange(
                start_date=max(first, start),
                end_date=min(last, end),
                label=month_label(first),
            )
        )
        month += 1
        if month > 12:
            month = 1
            year += 1
    return out


def spans_single_month(start: date, end: date) -> bool:
    return (start.year, start.month) == (end.year, end.month)


def months_between(start: date, end: date) -> int:
    """Whole calendar months from ``start``'s month to ``end``'s month (0 when equal)."""

    return (end.year - start.year) * 12 + (end.month - start.month)


__all__ = ["month_label", "months_between", "partition_months", "spans_single_month"]
