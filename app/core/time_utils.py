"""Timezone-explicit date and time helpers used by the scheduling core."""

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

MINUTES_PER_DAY = 24 * 60


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(UTC)


def get_zone(name: str) -> ZoneInfo:
    """
    Resolve an IANA timezone name.

    Raises:
        ValueError: If the name is unknown
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {name}") from e


def ensure_aware(value: datetime, zone: ZoneInfo) -> datetime:
    """Attach ``zone`` to a naive datetime; aware values are returned unchanged."""
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value


def day_of_week(day: date) -> int:
    """Day index with 0 = Sunday ... 6 = Saturday."""
    return day.isoweekday() % 7


def minute_of_day(value: datetime | time) -> int:
    """Minutes since local midnight, seconds truncated."""
    return value.hour * 60 + value.minute


def parse_hhmm(value: str) -> int:
    """
    Parse ``HH:MM`` into minutes since midnight.

    ``24:00`` is accepted as the end of day.

    Raises:
        ValueError: If the string is not a valid wall-clock time
    """
    try:
        hours_str, minutes_str = value.strip().split(":")
        hours, minutes = int(hours_str), int(minutes_str)
    except (AttributeError, ValueError) as e:
        raise ValueError("Time must be in HH:MM format") from e

    if hours == 24 and minutes == 0:
        return MINUTES_PER_DAY
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError("Time must be in HH:MM format")
    return hours * 60 + minutes


def format_minutes(minutes: int) -> str:
    """Format minutes since midnight as ``HH:MM``."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def local_instant(day: date, minutes: int, zone: ZoneInfo) -> datetime:
    """Aware datetime for ``minutes`` after local midnight of ``day`` in ``zone``."""
    midnight = datetime.combine(day, time(0, 0))
    naive = midnight + timedelta(minutes=minutes)
    return naive.replace(tzinfo=zone)
