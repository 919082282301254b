"""
Randomized inter-send delays.

Messages leaving the single send lane at perfectly regular intervals look
automated. This module produces a delay before each send, always bounded by
the configured ``[min, max]`` range, using one of three distributions:

- ``uniform``: flat within the range
- ``natural``: log-normal around the range midpoint, so most delays cluster in
  the middle with occasional longer ones
- ``variable``: triangular around the midpoint with a rare "distracted" bump
"""
import math
import random
from enum import Enum
from typing import Optional


class JitterMode(str, Enum):
    """Distribution used for send delays."""
    UNIFORM = "uniform"
    NATURAL = "natural"
    VARIABLE = "variable"


def calculate_send_delay(
    min_seconds: float,
    max_seconds: float,
    mode: JitterMode = JitterMode.UNIFORM,
) -> float:
    """
    Draw one delay in seconds within ``[min_seconds, max_seconds]``.

    Args:
        min_seconds: Lower bound (inclusive).
        max_seconds: Upper bound (inclusive).
        mode: Distribution to draw from.

    Returns:
        Delay in seconds, clamped to the bounds.

    Raises:
        ValueError: If the bounds are negative or inverted.
    """
    if min_seconds < 0 or max_seconds < 0:
        raise ValueError("Delay bounds must be non-negative")
    if min_seconds > max_seconds:
        raise ValueError("Minimum delay must be <= maximum delay")
    if max_seconds == min_seconds:
        return float(min_seconds)

    span = max_seconds - min_seconds
    mid = min_seconds + span / 2

    if mode == JitterMode.NATURAL and mid > 0:
        # sigma scaled so ~95% of draws land inside the range before clamping
        sigma = min(0.5, math.log(max_seconds / mid) / 2) if min_seconds > 0 else 0.5
        delay = random.lognormvariate(math.log(mid), sigma)
    elif mode == JitterMode.VARIABLE:
        delay = random.triangular(min_seconds, max_seconds, mid)
        if random.random() < 0.1:
            delay += random.uniform(0, span / 2)
    else:
        delay = random.uniform(min_seconds, max_seconds)

    return max(min_seconds, min(delay, max_seconds))


class SendJitter:
    """
    Source of inter-send delays for the send queue.

    Avoids handing out two nearly identical delays in a row (looks robotic)
    by re-drawing once when the new value lands within 10% of the range from
    the previous one.

    Example:
        >>> jitter = SendJitter(min_ms=1200, max_ms=2800)
        >>> 1.2 <= jitter.get_delay() <= 2.8
        True
    """

    def __init__(self, min_ms: int = 1200, max_ms: int = 2800, mode: JitterMode = JitterMode.UNIFORM):
        """
        Initialize the jitter source.

        Args:
            min_ms: Minimum delay in milliseconds.
            max_ms: Maximum delay in milliseconds.
            mode: Distribution used for each draw.
        """
        self.configure(min_ms, max_ms)
        self.mode = mode
        self._last_delay: Optional[float] = None

    def configure(self, min_ms: int, max_ms: int) -> None:
        """Change the bounds; applies to the next draw."""
        if min_ms < 0 or max_ms < 0:
            raise ValueError("Jitter bounds must be non-negative")
        if min_ms > max_ms:
            raise ValueError("Minimum jitter must be <= maximum jitter")
        self.min_seconds = min_ms / 1000
        self.max_seconds = max_ms / 1000

    def get_delay(self) -> float:
        """Next delay in seconds."""
        delay = calculate_send_delay(self.min_seconds, self.max_seconds, self.mode)
        span = self.max_seconds - self.min_seconds
        if self._last_delay is not None and span > 0 and abs(delay - self._last_delay) < span * 0.1:
            delay = calculate_send_delay(self.min_seconds, self.max_seconds, self.mode)
        self._last_delay = delay
        return delay
