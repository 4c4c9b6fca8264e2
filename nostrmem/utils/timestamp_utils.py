"""
Timestamp utilities for consistent time handling across the system.
"""

import secrets
import time
from datetime import datetime, timezone
from typing import Optional

# NIP-59: seal and gift wrap timestamps are tweaked up to two days into the past
TIMESTAMP_TWEAK_RANGE = 2 * 24 * 60 * 60


def now_seconds() -> int:
    """Current Unix time in whole seconds."""
    return int(time.time())


def tweaked_timestamp(timestamp: Optional[int] = None, tweak_range: int = TIMESTAMP_TWEAK_RANGE) -> int:
    """Randomize a timestamp into the past to resist metadata correlation.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)
        tweak_range: Maximum number of seconds to move the timestamp back

    Returns:
        Timestamp between ``timestamp - tweak_range + 1`` and ``timestamp``
    """
    if timestamp is None:
        timestamp = now_seconds()
    if tweak_range <= 0:
        return timestamp
    return timestamp - secrets.randbelow(tweak_range)


def to_datetime(timestamp: Optional[int] = None) -> datetime:
    """Convert timestamp to timezone-aware UTC datetime object.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        datetime object
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def parse_iso8601(value: str) -> datetime:
    """Parse an ISO 8601 string into a UTC datetime.

    Naive values are taken to be UTC. A trailing ``Z`` is accepted.

    Raises:
        ValueError: If the value is not a valid ISO 8601 timestamp
    """
    value = value.strip()
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso8601(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')
