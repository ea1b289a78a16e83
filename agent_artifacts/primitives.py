"""
Common primitives shared by the store, the embedding queue and retrieval.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from ulid import ULID


def generate_ulid() -> str:
    """Generate a ULID for row IDs.

    ULIDs are lexicographically sortable and globally unique, which keeps
    "order by id" close to insertion order.
    """
    return str(ULID())


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 rendering with an explicit UTC offset."""
    value = as_utc(value)
    return value.isoformat() if value else None
