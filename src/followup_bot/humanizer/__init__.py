"""Human-like pacing for outbound sends."""

from followup_bot.humanizer.timing import JitterMode, SendJitter, calculate_send_delay

__all__ = [
    "JitterMode",
    "SendJitter",
    "calculate_send_delay",
]
