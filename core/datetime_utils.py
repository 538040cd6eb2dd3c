from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

__all__ = ["ensure_aware", "from_unix_timestamp", "utcnow"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_unix_timestamp(value: Any) -> Optional[datetime]:
    """Convert a Stripe epoch-seconds value into an aware UTC datetime."""

    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
