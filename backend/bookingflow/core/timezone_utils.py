"""UTC helpers shared by services and repositories."""

from datetime import date, datetime, timezone
import logging

import pytz

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """
    Return ``value`` as an aware UTC datetime.

    SQLite hands back naive datetimes for ``DateTime(timezone=True)``
    columns; everything stored by this package is UTC, so naive values are
    tagged rather than converted.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_date(value: datetime, tz_name: str) -> date:
    """Calendar date of ``value`` as seen in ``tz_name`` (UTC when unknown)."""
    try:
        tz = pytz.timezone(tz_name or "UTC")
    except pytz.UnknownTimeZoneError:
        logger.warning("Unknown timezone %s, falling back to UTC", tz_name)
        tz = pytz.UTC
    return ensure_utc(value).astimezone(tz).date()
