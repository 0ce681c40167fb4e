"""
Derived-field computation for subscriptions.

Pure functions, no database access:
  - duration normalisation (dates / frequency → months)
  - currency normalisation to the base currency (keeps original amount + rate)
  - monthly-equivalent cost
  - expiry projection (request date + duration months)
  - renewal-alert and monthly-continuation windows

Usage:
    from autotrack.services import pricing

    converted = pricing.convert_to_base(120, "USD", {"USD": 83}, "INR")
    expiry = pricing.add_months(request_date, 12)
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

FREQUENCY_MONTHS = {"Monthly": 1, "Quarterly": 3, "Yearly": 12, "One-time": 1}

DEFAULT_ALERT_DAYS = 10
MIN_ALERT_DAYS = 1
MAX_ALERT_DAYS = 60

# Days before the billing day-of-month when the continuation prompt opens
CONTINUATION_LEAD_DAYS = 10


@dataclass(frozen=True)
class ConvertedAmount:
    """An entered amount and its base-currency equivalent."""

    amount: float
    base_currency: str
    original_amount: float
    original_currency: str
    rate: float


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return as_utc(value).date()
    return value


# ── Duration ─────────────────────────────────────────────────────────────────


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calendar_months_between(start: date | datetime, end: date | datetime) -> int:
    """Number of calendar-month boundaries between two dates (day ignored)."""
    start_d, end_d = _as_date(start), _as_date(end)
    return (end_d.year - start_d.year) * 12 + (end_d.month - start_d.month)


def duration_from_dates(start: date | datetime, end: date | datetime) -> int:
    """Duration in months for a start/end pair; a zero-month span is one-time (1)."""
    if _as_date(end) < _as_date(start):
        raise ValueError("end_date must not be before start_date")
    return calendar_months_between(start, end) or 1


def duration_from_frequency(frequency: str) -> int:
    try:
        return FREQUENCY_MONTHS[frequency]
    except KeyError:
        raise ValueError(
            f"frequency must be one of: {', '.join(FREQUENCY_MONTHS)}"
        ) from None


def validate_duration(value) -> int:
    try:
        months = int(value)
    except (TypeError, ValueError):
        raise ValueError("duration must be a whole number of months") from None
    if months < 1:
        raise ValueError("duration must be at least 1 month")
    return months


def validate_alert_days(value) -> int:
    if value is None:
        return DEFAULT_ALERT_DAYS
    try:
        days = int(value)
    except (TypeError, ValueError):
        raise ValueError("alert_days must be an integer") from None
    if not MIN_ALERT_DAYS <= days <= MAX_ALERT_DAYS:
        raise ValueError(f"alert_days must be between {MIN_ALERT_DAYS} and {MAX_ALERT_DAYS}")
    return days


# ── Cost ─────────────────────────────────────────────────────────────────────


def convert_to_base(
    amount,
    currency: str | None,
    rates: dict[str, float],
    base_currency: str,
) -> ConvertedAmount:
    """Convert an entered amount into the base currency.

    ``rates`` maps currency code → units of base currency per one unit.
    The base currency itself always converts at 1.
    """
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise ValueError("cost must be a number") from None
    if value < 0:
        raise ValueError("cost must not be negative")

    code = (currency or base_currency).upper()
    if code == base_currency:
        rate = 1.0
    elif code in rates:
        rate = float(rates[code])
    else:
        raise ValueError(f"Unsupported currency: {code}")

    return ConvertedAmount(
        amount=round(value * rate, 2),
        base_currency=base_currency,
        original_amount=value,
        original_currency=code,
        rate=rate,
    )


def monthly_equivalent(cost: float | None, duration: int | None) -> float:
    return round((cost or 0.0) / max(duration or 1, 1), 2)


# ── Expiry & alerts ──────────────────────────────────────────────────────────


def compute_expiry(request_date: datetime, duration: int) -> datetime:
    return add_months(as_utc(request_date), duration)


def days_until(expiry: datetime | date, today: date) -> int:
    return (_as_date(expiry) - today).days


def is_alert_eligible(expiry: datetime | None, alert_days: int | None, today: date) -> bool:
    """True when the expiry is within the alert window or already past."""
    if expiry is None:
        return False
    remaining = days_until(expiry, today)
    if remaining < 0:
        return True
    return remaining <= (alert_days or DEFAULT_ALERT_DAYS)


# ── Monthly continuation ─────────────────────────────────────────────────────


def month_key(today: date) -> str:
    return f"{today.year:04d}-{today.month:02d}"


def _billing_day(year: int, month: int, start_day: int) -> date:
    return date(year, month, min(start_day, calendar.monthrange(year, month)[1]))


def continuation_window(request_date: datetime, today: date) -> tuple[date, date]:
    """[opens, closes) window for the next continuation decision.

    Closes on the next billing day (the request date's day-of-month, clamped
    to the month's length) and opens CONTINUATION_LEAD_DAYS before it. Once
    this month's billing day has passed, the window is next month's, so a
    billing day early in the month opens at the end of the previous one.
    """
    start_day = _as_date(request_date).day
    closes = _billing_day(today.year, today.month, start_day)
    if today >= closes:
        year, month = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
        closes = _billing_day(year, month, start_day)
    return closes - timedelta(days=CONTINUATION_LEAD_DAYS), closes


def in_continuation_window(request_date: datetime | None, today: date) -> bool:
    if request_date is None:
        return False
    opens, closes = continuation_window(request_date, today)
    return opens <= today < closes


def continuation_key(request_date: datetime, today: date) -> str:
    """Month key of the billing day the current window leads up to."""
    return month_key(continuation_window(request_date, today)[1])
