"""
Time utilities for BugBase.

This module provides a single source of truth for time operations,
ensuring consistency across all endpoints and preventing clock drift issues.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC time.
    Single source of truth for "now" throughout the application.

    Returns:
        timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime read back from the database to an aware UTC value.

    SQLite drops tzinfo on round trip, so naive values are taken to be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_today() -> datetime:
    """Midnight of the current UTC day."""
    return utc_now().replace(hour=0, minute=0, second=0, microsecond=0)


def is_overdue(due_date: Optional[datetime], status: str) -> bool:
    """
    Check if an issue is overdue.

    An issue is overdue if it has a due date in the past and is not
    in 'Verified' or 'Closed' status.

    Args:
        due_date: The issue's due date
        status: The issue's status

    Returns:
        True if issue is overdue, False otherwise
    """
    if not due_date or status in ("Verified", "Closed"):
        return False
    return as_utc(due_date) < utc_now()
