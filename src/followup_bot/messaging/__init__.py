"""Outbound lane: admission control, rate counters, the send queue and channel contract."""

from followup_bot.messaging.channel import DryRunChannel, MessagingChannel
from followup_bot.messaging.rate_limits import RateLimitCounters
from followup_bot.messaging.send_gate import DenialReason, GateDecision, SendGate
from followup_bot.messaging.send_queue import DrainReport, SendQueue

__all__ = [
    "DenialReason",
    "DrainReport",
    "DryRunChannel",
    "GateDecision",
    "MessagingChannel",
    "RateLimitCounters",
    "SendGate",
    "SendQueue",
]
