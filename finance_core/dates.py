"""Calendar helpers for monthly schedules and billing cycles."""

import calendar
from datetime import date, timedelta


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def with_day(value: date, day: int) -> date:
    """Replace the day of month, clamped to the month's length"""
    return value.replace(day=min(day, days_in_month(value.year, value.month)))


def add_months(start_date: date, months: int, day: int = None) -> date:
    """
    Add months to a date, handling month-end edge cases

    Jan 31 + 1 month is Feb 28 (or 29). When ``day`` is given it is used
    instead of the start date's day, so a cycle pinned to the 31st returns
    to the 31st after passing through a short month.
    """
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    target_day = start_date.day if day is None else day
    return date(year, month, min(target_day, days_in_month(year, month)))


def first_day_on_or_after(start: date, day: int) -> date:
    """First date on or after ``start`` whose day of month is ``day`` (clamped)"""
    candidate = with_day(start, day)
    if candidate < start:
        candidate = add_months(start, 1, day=day)
    return candidate


def first_day_after(start: date, day: int) -> date:
    """First date strictly after ``start`` whose day of month is ``day`` (clamped)"""
    return first_day_on_or_after(start + timedelta(days=1), day)
