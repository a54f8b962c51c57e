"""
Calendar helpers shared by the pipeline and the read path.

Weeks are Monday-aligned. The "data week" ranked by the trending job is the
last fully completed week, compared against the week before it.
"""

import calendar
from datetime import date, datetime, timedelta, timezone
from typing import Optional


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def utc_midnight(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


def monday_of(day: date) -> date:
    return day - timedelta(days=day.weekday())


def data_week(today: Optional[date] = None) -> date:
    """Monday of the most recent week strictly before the current partial week"""
    today = today or utc_today()
    return monday_of(today - timedelta(weeks=1))


def comparison_week(today: Optional[date] = None) -> date:
    today = today or utc_today()
    return monday_of(today - timedelta(weeks=2))


def subtract_months(day: date, months: int) -> date:
    """Same day-of-month ``months`` earlier, clamped to the month's length"""
    index = day.year * 12 + (day.month - 1) - months
    year, month = divmod(index, 12)
    month += 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def first_of_month(value: datetime) -> date:
    return date(value.year, value.month, 1)
