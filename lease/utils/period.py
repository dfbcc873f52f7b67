from datetime import date, timedelta
from typing import NamedTuple

from lease.config import config


class RentPeriod(NamedTuple):
    start: date
    end: date  # inclusive


def build_period(start: date, days: int = None) -> RentPeriod:
    """Structured period covering ``days`` days from ``start`` (both ends inclusive)."""
    if days is None:
        days = config.RENT_CYCLE_DAYS
    return RentPeriod(start=start, end=start + timedelta(days=days - 1))


def format_period(start: date, days: int = None) -> str:
    """
    Display string stored in ``period_covered``.
    Example: "09/29/2025 - 10/28/2025"
    """
    period = build_period(start, days)
    return f"{period.start.strftime('%m/%d/%Y')} - {period.end.strftime('%m/%d/%Y')}"
