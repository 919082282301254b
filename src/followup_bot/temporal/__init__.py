"""Time-of-day helpers bound to the business time zone."""

from followup_bot.temporal.window import is_within_window, local_hour, local_time

__all__ = [
    "is_within_window",
    "local_hour",
    "local_time",
]
