"""
Common utility functions for the progression engine.

Small numeric and date helpers shared by the statistics, difficulty and
streak components.
"""

import datetime
from typing import Iterable, Optional, Union

Number = Union[int, float]


def safe_divide(numerator: Number, denominator: Number, default: Number = 0) -> float:
    """
    Safely divide two numbers, returning a default value if denominator is zero.

    Args:
        numerator: Number to divide
        denominator: Number to divide by
        default: Value to return if denominator is zero

    Returns:
        Result of division or default value
    """
    if not denominator:
        return default
    return numerator / denominator


def clamp(value: Number, low: Number, high: Number) -> Number:
    """Clamp ``value`` into ``[low, high]``."""
    return max(low, min(high, value))


def mean(values: Iterable[Number], default: float = 0.0) -> float:
    """Arithmetic mean of ``values``, or ``default`` when empty."""
    values = list(values)
    if not values:
        return default
    return sum(values) / len(values)


def days_between(earlier: datetime.date, later: datetime.date) -> int:
    """
    Whole calendar days from ``earlier`` to ``later``.

    Args:
        earlier: Start date
        later: End date

    Returns:
        Signed number of days
    """
    return (later - earlier).days


def month_index(day: datetime.date) -> int:
    """Months since year zero, for comparing calendar months."""
    return day.year * 12 + (day.month - 1)


def parse_datetime(value: Optional[Union[str, datetime.datetime]]) -> Optional[datetime.datetime]:
    """
    Parse an ISO string into a datetime, passing datetimes and None through.

    Args:
        value: ISO formatted string, datetime or None

    Returns:
        Parsed datetime or None
    """
    if value is None or isinstance(value, datetime.datetime):
        return value
    return datetime.datetime.fromisoformat(value)


def parse_date(value: Optional[Union[str, datetime.date]]) -> Optional[datetime.date]:
    """Parse an ISO date string, passing dates and None through."""
    if value is None or isinstance(value, datetime.date):
        return value
    return datetime.date.fromisoformat(value)


def to_naive_local(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Convert an aware datetime to naive local time; naive values pass through."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value
