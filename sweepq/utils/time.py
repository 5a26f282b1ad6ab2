"""Timestamp helpers shared by repositories and schedulers.

All persisted instants are UTC and written with a fixed-width ISO format so
that string comparison in SQL matches chronological order.
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, time, timedelta, timezone

_DB_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"
_OFFSET_PATTERN = re.compile(r"^([+-])(\d{1,2})(?::?(\d{2}))?$")
_WALL_CLOCK_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def to_db_ts(value: datetime) -> str:
    return ensure_aware(value).astimezone(UTC).strftime(_DB_FORMAT)


def from_db_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return ensure_aware(datetime.fromisoformat(value))


def parse_utc_offset(offset: str) -> timezone:
    """
    Parse a signed hour offset into a fixed timezone.

    Accepts "-08", "+05:30", "+0530", "-8". The sign follows ISO 8601:
    "-08" is eight hours behind UTC.

    Raises:
        ValueError: If the offset is malformed or outside +/-14:00
    """
    match = _OFFSET_PATTERN.match(offset.strip())
    if not match:
        raise ValueError(f"Invalid time zone offset: {offset!r}")

    sign, hours, minutes = match.groups()
    delta = timedelta(hours=int(hours), minutes=int(minutes or 0))
    if delta > timedelta(hours=14):
        raise ValueError(f"Time zone offset out of range: {offset!r}")

    return timezone(-delta if sign == "-" else delta)


def parse_wall_clock(value: str) -> time:
    """Parse local "HH:MM" into a time. Raises ValueError if malformed."""
    match = _WALL_CLOCK_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Invalid wall-clock time: {value!r}")
    return time(int(match.group(1)), int(match.group(2)))


def local_date(now_utc: datetime, offset: str) -> date:
    return ensure_aware(now_utc).astimezone(parse_utc_offset(offset)).date()


def age_in_days(received_at: datetime, now: datetime) -> int:
    """Whole days elapsed since received_at (never negative)."""
    return max((ensure_aware(now) - ensure_aware(received_at)).days, 0)
