"""
Business-date derivation

A sale belongs to the restaurant's local business day, which is not the
UTC calendar day for late-night checks. The provider's explicit day stamp
always wins; converting the close timestamp through the tenant timezone is
only the fallback.
"""
from datetime import date, datetime, time
from typing import Any, Optional

import pytz
from dateutil import parser as date_parser

from app.config import get_settings
from app.utils.logger import log

settings = get_settings()


def get_timezone(tz_name: Optional[str]):
    """Return a pytz timezone, falling back to the configured default."""
    name = tz_name or settings.default_timezone
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        log.warning(f"Unknown timezone '{name}', using {settings.default_timezone}")
        return pytz.timezone(settings.default_timezone)


def parse_business_date(value: Any) -> Optional[date]:
    """
    Parse a provider day stamp.

    Accepts Toast's integer form (20260214), the same as a string, ISO
    dates, and date/datetime objects. Returns None for empty values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if len(text) == 8 and text.isdigit():
        return date(int(text[:4]), int(text[4:6]), int(text[6:]))
    return date_parser.parse(text).date()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a provider timestamp into a naive UTC datetime."""
    if value is None or value == "":
        return None
    parsed = value if isinstance(value, datetime) else date_parser.isoparse(str(value))
    if parsed.tzinfo is None:
        return parsed
    return parsed.astimezone(pytz.utc).replace(tzinfo=None)


def to_local(ts: datetime, tz_name: Optional[str]) -> datetime:
    """Convert a naive UTC timestamp to the tenant's local wall clock."""
    return pytz.utc.localize(ts).astimezone(get_timezone(tz_name))


def resolve_business_date(
    business_date: Optional[date],
    closed_at: Optional[datetime],
    opened_at: Optional[datetime],
    tz_name: Optional[str],
) -> Optional[date]:
    """
    Resolve which day a sale belongs to.

    Order of precedence:
        1. the provider's business date
        2. close timestamp converted to the tenant timezone
        3. open timestamp converted to the tenant timezone
    """
    if business_date is not None:
        return business_date
    ts = closed_at or opened_at
    if ts is None:
        return None
    return to_local(ts, tz_name).date()


def resolve_sale_time(
    closed_at: Optional[datetime],
    opened_at: Optional[datetime],
    tz_name: Optional[str],
) -> Optional[time]:
    """Local time of day of the sale, without microseconds."""
    ts = closed_at or opened_at
    if ts is None:
        return None
    return to_local(ts, tz_name).time().replace(microsecond=0)
