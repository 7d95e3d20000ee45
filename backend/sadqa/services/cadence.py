"""Billing cadence rules for recurring donations"""
import calendar
from datetime import datetime, timedelta
from typing import Dict, Tuple

from sadqa.core.config import DEFAULT_TOTAL_CYCLES

# Gateway (period, interval) per cadence. The gateway has no daily period,
# so "daily" donors are billed weekly for seven days at a time.
BILLING_PERIODS: Dict[str, Tuple[str, int]] = {
    "daily": ("weekly", 1),
    "weekly": ("weekly", 2),
    "monthly": ("monthly", 1),
    "yearly": ("yearly", 1),
}

DISPLAY_NAMES = {
    "daily": "Daily Sadqa",
    "weekly": "Weekly Sadqa",
    "monthly": "Monthly Sadqa",
    "yearly": "Yearly Sadqa",
}


def billed_amount(cadence: str, amount_paise: int) -> int:
    """Amount charged per billing cycle for the donor's chosen amount"""
    if cadence == "daily":
        return amount_paise * 7
    return amount_paise


def default_total_cycles(cadence: str) -> int:
    return DEFAULT_TOTAL_CYCLES.get(cadence, 600)


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_payment_date(start: datetime, cadence: str) -> datetime:
    """Date of the next charge after `start`"""
    if cadence == "daily":
        return start + timedelta(days=7)
    if cadence == "weekly":
        return start + timedelta(days=14)
    if cadence == "monthly":
        return _add_months(start, 1)
    if cadence == "yearly":
        return _add_months(start, 12)
    raise ValueError(f"Unknown cadence: {cadence}")
