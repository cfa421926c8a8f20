"""Time helpers.

All instants handled by the engine are timezone-aware UTC. The database stores
them as naive UTC, so values read back are normalised through ``ensure_utc``.
"""

from datetime import datetime, timezone
from typing import Callable, Optional


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as aware UTC; naive values are taken to already be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert to the naive UTC representation used by the storage layer."""
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def parse_instant(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime) into aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))
