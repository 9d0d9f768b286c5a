"""Clock abstraction and timestamp helpers.

All timestamps are stored as naive UTC ISO strings so that SQLite string
comparison orders them correctly.
"""

from datetime import datetime, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize(value: datetime) -> datetime:
    """Convert aware datetimes to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_db(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return normalize(value).isoformat()


def from_db(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return normalize(datetime.fromisoformat(value))
