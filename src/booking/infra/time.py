"""Clock and timezone helpers.

Everything is stored as UTC. Appointment dates and times typed by staff are
wall-clock values in the business timezone (BOOKING_TIMEZONE).
"""

import os
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

DEFAULT_BUSINESS_TIMEZONE = "America/Mexico_City"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def business_tz() -> ZoneInfo:
    return ZoneInfo(os.environ.get("BOOKING_TIMEZONE", DEFAULT_BUSINESS_TIMEZONE))


def from_epoch_seconds(value: str | int | None) -> datetime | None:
    """Provider timestamps arrive as epoch seconds, usually as strings."""
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def parse_iso_datetime(value: str) -> datetime:
    """Parse an ISO-8601 instant. Naive values are taken as UTC.

    Raises:
        ValueError: If the string is not a valid ISO datetime.
    """
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def local_to_utc(day: date, at: time) -> datetime:
    """Interpret a wall-clock date/time in the business timezone."""
    return datetime.combine(day, at, tzinfo=business_tz()).astimezone(timezone.utc)


def local_day_bounds(day: date) -> tuple[datetime, datetime]:
    """UTC [start, end) for a calendar day in the business timezone."""
    start = local_to_utc(day, time(0, 0))
    end = local_to_utc(day + timedelta(days=1), time(0, 0))
    return start, end


def isoformat_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
