"""
Allowed-hours window in the business time zone.

Sending hours are defined in the region the business operates in, not the
host's local time. The host may run in UTC on a cloud VM while the window is
"09:00-22:00 in São Paulo".
"""
from datetime import datetime, timezone
from typing import Optional

import pytz

from followup_bot.core.models import WindowConfig

DEFAULT_BUSINESS_TIMEZONE = "America/Sao_Paulo"


def business_tz(name: Optional[str]) -> pytz.BaseTzInfo:
    """Resolve a time zone name, falling back to the default business zone.

    Raises:
        pytz.UnknownTimeZoneError: If ``name`` is set but unknown.
    """
    return pytz.timezone(name or DEFAULT_BUSINESS_TIMEZONE)


def local_time(now: datetime, tz_name: Optional[str]) -> datetime:
    """Convert ``now`` to the business time zone (naive input is treated as UTC)."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(business_tz(tz_name))


def local_hour(now: datetime, tz_name: Optional[str]) -> int:
    """Hour of day (0-23) in the business time zone."""
    return local_time(now, tz_name).hour


def is_within_window(window: WindowConfig, now: datetime) -> bool:
    """Whether ``now`` falls inside ``[start_hour, end_hour)`` local time.

    A window whose start is after its end wraps past midnight
    (e.g. 20 -> 6 allows 20:00-05:59).

    Examples:
        >>> from followup_bot.core.models import WindowConfig
        >>> w = WindowConfig(start_hour=9, end_hour=22, timezone="America/Sao_Paulo")
        >>> is_within_window(w, datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc))  # 12:00 local
        True
        >>> is_within_window(w, datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc))   # 23:00 local
        False
    """
    hour = local_hour(now, window.timezone)
    start, end = window.start_hour, window.end_hour
    if start == end:
        return False
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end
