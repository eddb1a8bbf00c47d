"""Business-timezone date helpers.

Timestamps are stored in UTC.  Calendar questions ("same day", "today or
yesterday") are answered in the ledger's fixed business timezone.
"""

from datetime import date, datetime, time, timezone

from microledger.config import settings


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalise to an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_business(value: datetime) -> datetime:
    return as_utc(value).astimezone(settings.tz)


def business_date(value: datetime | None = None) -> date:
    """Calendar date of *value* (default: now) in the business timezone."""
    return to_business(value or now_utc()).date()


def start_of_business_day(day: date) -> datetime:
    """UTC instant at which *day* starts in the business timezone."""
    return datetime.combine(day, time.min, tzinfo=settings.tz).astimezone(timezone.utc)


def parse_payment_date(value: str | date | datetime | None) -> datetime:
    """Resolve a caller-supplied payment date to a UTC timestamp.

    Date-only values (``"2025-10-19"`` or ``date``) mean the start of that day
    in the business timezone; naive datetimes are wall-clock business time.
    """
    if value is None:
        return now_utc()
    if isinstance(value, str):
        value = value.strip()
        if len(value) == 10:
            return start_of_business_day(date.fromisoformat(value))
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=settings.tz)
        return value.astimezone(timezone.utc)
    return start_of_business_day(value)
