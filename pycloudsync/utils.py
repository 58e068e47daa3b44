"""Utility functions for pycloudsync."""

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

# =============================================================================
# Constants
# =============================================================================

# Default sync interval used by the external scheduler (5 minutes)
DEFAULT_SYNC_INTERVAL: float = 300.0

# Lock markers older than this are treated as abandoned (1 hour)
STALE_LOCK_SECONDS: float = 3600.0

# Poll interval while waiting for a held lock
LOCK_POLL_INTERVAL: float = 0.5

# Default time to wait for a lock before giving up
DEFAULT_LOCK_TIMEOUT: float = 30.0

# Retry configuration for the backoff controller
DEFAULT_MAX_ATTEMPTS: int = 3
DEFAULT_BASE_DELAY: float = 1.0
DEFAULT_MAX_DELAY: float = 60.0

# How long sync history is kept by `cleanup`
DEFAULT_HISTORY_DAYS: int = 30


# =============================================================================
# Timestamp utilities
# =============================================================================


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to ISO-8601, passing None through."""
    if dt is None:
        return None
    return dt.isoformat()


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp.

    Naive values are assumed to be UTC. A trailing ``Z`` is accepted.

    Args:
        timestamp_str: ISO format timestamp string (e.g., "2025-01-15T10:30:00Z")

    Returns:
        Timezone-aware datetime, or None if the value is empty or invalid
    """
    if not timestamp_str:
        return None

    if timestamp_str.endswith("Z"):
        timestamp_str = timestamp_str[:-1] + "+00:00"

    try:
        dt = datetime.fromisoformat(timestamp_str)
    except (ValueError, TypeError):
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def file_mtime(path: Union[str, Path]) -> datetime:
    """Return the modification time of a path as a UTC datetime.

    Raises:
        OSError: If the path cannot be stat'ed
    """
    return datetime.fromtimestamp(os.stat(path).st_mtime, tz=timezone.utc)


# =============================================================================
# Formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"


def format_interval(seconds: float) -> str:
    """Format a sync interval the way the schedule listing shows it.

    Examples:
        >>> format_interval(7200)
        '2h'
        >>> format_interval(300)
        '5m'
        >>> format_interval(45)
        '45s'
    """
    total = int(seconds)
    minutes = total // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h"
    if minutes > 0:
        return f"{minutes}m"
    return f"{total}s"


def format_duration(seconds: float) -> str:
    """Format an elapsed time (e.g., "0.4s", "2m 05s", "1h 02m")."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m"


def format_relative_time(dt: datetime, now: Optional[datetime] = None) -> str:
    """Describe how long ago a timestamp was (e.g., "5 min ago").

    Args:
        dt: Timestamp in the past
        now: Reference time (defaults to the current UTC time)
    """
    now = now or utc_now()
    delta = (now - dt).total_seconds()
    if delta < 0:
        return "in the future"
    if delta < 60:
        return "just now"
    if delta < 3600:
        return f"{int(delta // 60)} min ago"
    if delta < 86400:
        return f"{int(delta // 3600)} hr ago"
    days = int(delta // 86400)
    return f"{days} day{'s' if days != 1 else ''} ago"
