"""Core utility functions."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from itertools import islice
from typing import Iterable, Iterator, List, Optional, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    """Get current UTC datetime with timezone info. Always use this instead of datetime.now()."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is timezone-aware (UTC).

    SQLite stores datetimes without timezone info, so we need to make them
    aware before comparing with utcnow().

    Args:
        dt: A datetime that may or may not be timezone-aware.

    Returns:
        Timezone-aware datetime in UTC, or None if input was None.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def generate_unique_key() -> str:
    """Generate a unique random key."""
    return uuid.uuid4().hex


def chunked(items: Iterable[T], size: int) -> Iterator[List[T]]:
    """
    Yield successive lists of at most ``size`` items.

    Args:
        items: Any iterable.
        size: Maximum chunk length (must be positive).

    Yields:
        Lists in input order; the last one may be shorter.
    """
    if size < 1:
        raise ValueError("chunk size must be positive")
    iterator = iter(items)
    while True:
        chunk = list(islice(iterator, size))
        if not chunk:
            return
        yield chunk


__all__ = [
    "utcnow",
    "ensure_aware",
    "generate_unique_key",
    "chunked",
]
