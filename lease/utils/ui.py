from decimal import Decimal
from typing import Iterable, Optional

from lease.config import config


class UIMessages:
    """Formatted notification fragments (Telegram HTML)"""

    @staticmethod
    def field(name: str, value: str) -> str:
        return f"• <b>{name}:</b> {value}\n"


def format_amount(amount, currency: Optional[str] = None) -> str:
    """Format amount with currency code"""
    if amount is None:
        return "—"
    currency = currency or config.DEFAULT_CURRENCY
    return f"{Decimal(amount):,.2f} {currency}"


def format_date(date_obj) -> str:
    if not date_obj:
        return "—"
    return f"{date_obj.strftime('%b')} {date_obj.day}, {date_obj.year}"


def format_periods(periods: Iterable) -> str:
    """One line per covered period; items need start, end and partial."""
    lines = [
        f"- {format_date(p.start)} to {format_date(p.end)}{' (Partial)' if p.partial else ''}"
        for p in periods
    ]
    return "\n".join(lines) if lines else "N/A"
