"""Date and time utilities for token expiry handling."""

from datetime import datetime, timedelta
from typing import Optional, Union

import pytz


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(pytz.utc)


def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure datetime is in UTC.

    Args:
        dt: Datetime to convert

    Returns:
        UTC datetime
    """
    if dt.tzinfo is None:
        return pytz.utc.localize(dt)
    return dt.astimezone(pytz.utc)


def expiry_from_seconds(
    expires_in: Union[int, str, None],
    issued_at: Optional[datetime] = None,
    default_seconds: int = 3600,
) -> datetime:
    """
    Convert an ``expires_in`` lifetime into an absolute UTC expiry.

    Authorities send ``expires_in`` as either a number or a numeric string.

    Args:
        expires_in: Lifetime in seconds from the token response
        issued_at: When the response was received (defaults to now)
        default_seconds: Lifetime assumed when the field is absent or invalid

    Returns:
        UTC datetime at which the token expires
    """
    try:
        seconds = int(expires_in) if expires_in is not None else default_seconds
    except (TypeError, ValueError):
        seconds = default_seconds
    start = ensure_utc(issued_at) if issued_at else utc_now()
    return start + timedelta(seconds=max(seconds, 0))
