"""
Periodic Runner - Fixed-period execution of a coroutine with error backoff.

Used twice by the bot: once for the scheduler tick (default every 5 s) and once
for the send queue drain (default every second).

On an exception the cycle is logged, reported through ``on_error`` and the
next attempt is delayed with exponential backoff, capped at 5 minutes. The
first successful cycle resets the delay.

Usage:
    from followup_bot.scheduling.polling_daemon import PeriodicRunner

    async def tick() -> None:
        ...

    runner = PeriodicRunner("tick", callback=tick, interval_seconds=5)
    await runner.start()
    # ... runner works in background ...
    await runner.stop()
"""
import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from rich.console import Console

MAX_BACKOFF_SECONDS = 300


class PeriodicRunner:
    """
    Background loop calling ``callback`` every ``interval_seconds``.

    Attributes:
        name: Label used in console output.
        callback: Coroutine function run once per cycle.
        interval_seconds: Delay between successful cycles.
        on_error: Called with the exception when a cycle fails.
        console: Rich console for lifecycle output.
        stats: Counters for :meth:`health_check`.

    Example:
        >>> runner = PeriodicRunner("queue", callback=queue.drain_once, interval_seconds=1)
        >>> await runner.start()
        >>> runner.health_check()["cycles"]
        3
        >>> await runner.stop()
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[object]],
        interval_seconds: float,
        on_error: Optional[Callable[[Exception], None]] = None,
        console: Optional[Console] = None,
    ):
        """
        Initialize the runner.

        Args:
            name: Label used in console output.
            callback: Coroutine function run once per cycle.
            interval_seconds: Delay between successful cycles.
            on_error: Optional hook receiving cycle exceptions.
            console: Rich console; a fresh one is created if omitted.
        """
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.callback = callback
        self.interval_seconds = interval_seconds
        self.on_error = on_error
        self.console = console or Console()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.stats = {
            "cycles": 0,
            "errors": 0,
            "consecutive_errors": 0,
            "last_error": None,
            "started_at": None,
        }

    async def start(self) -> None:
        """Start the loop in a background task. No-op if already running."""
        if self._running:
            self.console.print(f"[yellow]{self.name} runner already running[/yellow]")
            return

        self._running = True
        self.stats["started_at"] = datetime.now(timezone.utc)
        self._task = asyncio.create_task(self._loop(), name=f"periodic-{self.name}")
        self.console.print(
            f"[green]{self.name} runner started (interval: {self.interval_seconds}s)[/green]"
        )

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        if not self._running:
            return

        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self.console.print(f"[green]{self.name} runner stopped[/green]")

    async def run_cycle(self) -> bool:
        """
        Run the callback once, recording failures.

        Returns:
            True if the cycle succeeded.
        """
        self.stats["cycles"] += 1
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats["errors"] += 1
            self.stats["consecutive_errors"] += 1
            self.stats["last_error"] = str(e)
            if self.on_error:
                self.on_error(e)
            return False
        self.stats["consecutive_errors"] = 0
        return True

    def next_delay(self) -> float:
        """Delay before the next cycle, backing off while cycles keep failing."""
        errors = self.stats["consecutive_errors"]
        if not errors:
            return self.interval_seconds
        return min(self.interval_seconds * (2 ** errors), MAX_BACKOFF_SECONDS)

    async def _loop(self) -> None:
        while self._running:
            ok = await self.run_cycle()
            delay = self.next_delay()
            if not ok:
                self.console.print(
                    f"[red]{self.name} cycle error: {self.stats['last_error']} "
                    f"(retry in {delay}s, errors: {self.stats['consecutive_errors']})[/red]"
                )
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                break

    def health_check(self) -> dict:
        """
        Runner health for status output.

        Returns:
            Dictionary with ``running``, ``uptime_seconds``, ``cycles``,
            ``errors``, ``consecutive_errors``, ``last_error`` and
            ``interval_seconds``.
        """
        uptime = None
        if self.stats["started_at"]:
            uptime = (datetime.now(timezone.utc) - self.stats["started_at"]).total_seconds()

        return {
            "running": self._running,
            "uptime_seconds": uptime,
            "cycles": self.stats["cycles"],
            "errors": self.stats["errors"],
            "consecutive_errors": self.stats["consecutive_errors"],
            "last_error": self.stats["last_error"],
            "interval_seconds": self.interval_seconds,
        }

    @property
    def is_running(self) -> bool:
        return self._running
