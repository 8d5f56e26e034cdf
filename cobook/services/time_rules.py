"""
Time helpers: the injectable UTC clock and timezone conversions.
"""
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional
import pytz
import structlog

from ..config import settings

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    """Current UTC instant. Services accept an explicit `now` and fall back to this."""
    return datetime.now(pytz.UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def is_valid_timezone(timezone_str: str) -> bool:
    return timezone_str in pytz.all_timezones_set


def minutes_between(start: datetime, end: datetime) -> Decimal:
    """Signed, fractional minutes from start to end."""
    seconds = (ensure_utc(end) - ensure_utc(start)).total_seconds()
    return Decimal(str(seconds)) / Decimal(60)


def utc_midnight(day: date) -> datetime:
    return datetime.combine(day, time.min).replace(tzinfo=pytz.UTC)


def local_to_utc(local_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert local datetime to UTC.

    Args:
        local_datetime: Local datetime (naive)
        timezone_str: Timezone string (e.g., "Europe/Berlin")

    Returns:
        UTC datetime (timezone-aware)
    """
    try:
        tz = pytz.timezone(timezone_str)
    except pytz.UnknownTimeZoneError:
        logger.warning("unknown_timezone", timezone=timezone_str)
        tz = pytz.UTC
    if local_datetime.tzinfo is None:
        local_dt = tz.localize(local_datetime)
    else:
        local_dt = local_datetime.astimezone(tz)
    return local_dt.astimezone(pytz.UTC)


def utc_to_local(utc_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert UTC datetime to local timezone.

    Args:
        utc_datetime: UTC datetime
        timezone_str: Timezone string

    Returns:
        Local datetime (timezone-aware)
    """
    try:
        tz = pytz.timezone(timezone_str)
    except pytz.UnknownTimeZoneError:
        logger.warning("unknown_timezone", timezone=timezone_str)
        tz = pytz.UTC
    return ensure_utc(utc_datetime).astimezone(tz)


def combine_date_time(date_val: date, time_val: time, timezone_str: Optional[str] = None) -> datetime:
    """
    Combine a local date and time-of-day into a UTC instant.

    Args:
        date_val: Local date
        time_val: Local time of day
        timezone_str: Timezone string (defaults to TZ_DEFAULT)

    Returns:
        UTC datetime (timezone-aware)
    """
    naive_dt = datetime.combine(date_val, time_val)
    return local_to_utc(naive_dt, timezone_str or settings.tz_default)


def month_bounds(now: datetime):
    """UTC [first day of month, first day of next month) around `now`."""
    now = ensure_utc(now)
    start = utc_midnight(now.date().replace(day=1))
    next_month = (start + timedelta(days=32)).date().replace(day=1)
    return start, utc_midnight(next_month)
