"""Time Utilities - UTC timestamps, parsing and the injectable clock"""
from datetime import datetime, timezone, timedelta
from typing import Optional, Protocol, Union
from dateutil import parser as date_parser


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes (Mongo returns naive values)"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso(dt: datetime) -> str:
    """
    Format datetime to ISO 8601 string

    Args:
        dt: Datetime object

    Returns:
        ISO formatted string with Z suffix for UTC
    """
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 string to datetime

    Args:
        iso_string: ISO formatted datetime string

    Returns:
        Datetime object in UTC
    """
    return ensure_utc(date_parser.isoparse(iso_string))


def add_seconds(dt: datetime, seconds: Union[int, float]) -> datetime:
    """Add seconds to datetime"""
    return dt + timedelta(seconds=seconds)


def is_due(scheduled_for: Optional[datetime], now: datetime) -> bool:
    """
    Check if a scheduled datetime has been reached

    Returns:
        True when nothing is scheduled or the time has passed
    """
    if scheduled_for is None:
        return True
    return ensure_utc(now) >= ensure_utc(scheduled_for)


class Clock(Protocol):
    """Wall time source used for every persisted timestamp"""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Clock backed by the system UTC time"""

    def now(self) -> datetime:
        return utc_now()
