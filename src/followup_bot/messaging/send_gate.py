"""
Send admission control.

SendGate answers "may I send to this contact right now?" by combining
channel connectivity, the allowed-hours window and the rate limit counters.
Checking is side-effect free; :meth:`SendGate.commit` is the only mutation and
must be called exactly once per delivered message.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from followup_bot.core.models import BotConfig
from followup_bot.messaging.rate_limits import RateLimitCounters
from followup_bot.temporal.window import is_within_window

logger = logging.getLogger(__name__)


class DenialReason(str, Enum):
    """Why a send was not admitted."""
    DISCONNECTED = "disconnected"
    OUTSIDE_WINDOW = "outside_window"
    LIMIT_MINUTE = "limit_minute"
    LIMIT_HOUR = "limit_hour"
    LIMIT_DAY = "limit_day"
    LIMIT_CONTACT_DAY = "limit_contact_day"

    @property
    def is_global(self) -> bool:
        """Global denials hold for every contact, so a drain cycle can stop."""
        return self is not DenialReason.LIMIT_CONTACT_DAY


@dataclass(frozen=True)
class GateDecision:
    """Outcome of an admission check."""
    allowed: bool
    reason: Optional[DenialReason] = None

    @classmethod
    def allow(cls) -> "GateDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenialReason) -> "GateDecision":
        return cls(allowed=False, reason=reason)


class SendGate:
    """
    Admission check in front of the single send lane.

    Checks run in a fixed order and the first failure wins:
    1. Channel connected
    2. Local time inside the allowed-hours window
    3. Global per-minute / per-hour / per-day ceilings
    4. Per-contact-per-day ceiling

    Attributes:
        counters: Rate limit counters shared with persistence.
        config_provider: Returns the live configuration (re-read on every check
            so panel updates apply immediately).
        is_connected: Returns the channel's current connectivity.
    """

    def __init__(
        self,
        counters: RateLimitCounters,
        config_provider: Callable[[], BotConfig],
        is_connected: Callable[[], bool],
    ):
        self.counters = counters
        self.config_provider = config_provider
        self.is_connected = is_connected

    def check(self, handle: str, now: datetime) -> GateDecision:
        """Decide whether a send to ``handle`` is admissible at ``now``.

        Never mutates counters or any other state.
        """
        config = self.config_provider()

        if not self.is_connected():
            return GateDecision.deny(DenialReason.DISCONNECTED)

        if not is_within_window(config.window, now):
            return GateDecision.deny(DenialReason.OUTSIDE_WINDOW)

        counts = self.counters.snapshot(handle, now)
        limits = config.limits
        if counts.per_minute >= limits.per_minute:
            return GateDecision.deny(DenialReason.LIMIT_MINUTE)
        if counts.per_hour >= limits.per_hour:
            return GateDecision.deny(DenialReason.LIMIT_HOUR)
        if counts.per_day >= limits.per_day:
            return GateDecision.deny(DenialReason.LIMIT_DAY)
        if counts.per_contact_per_day >= limits.per_contact_per_day:
            return GateDecision.deny(DenialReason.LIMIT_CONTACT_DAY)

        return GateDecision.allow()

    def commit(self, handle: str, now: datetime) -> None:
        """Record one successful send in every scope and prune stale buckets."""
        self.counters.increment(handle, now)
        self.counters.prune(now)
        logger.debug(f"Committed send to {handle}: {self.counters.snapshot(handle, now)}")
