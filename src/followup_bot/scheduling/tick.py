"""
Scheduler tick - one pass over the three scheduling streams.

Order matters: deferred starts first (they pre-empt the stepped funnel for
the same contact), then agenda reminders, then the follow-up scan. The tick
only decides and enqueues; it never sends.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from followup_bot.core.models import utc_now
from followup_bot.scheduling.agenda import AgendaEngine
from followup_bot.scheduling.deferred import DeferredStartEngine
from followup_bot.scheduling.followup import FollowUpEngine

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    """Intents queued by one tick, per stream."""
    deferred: int = 0
    agenda: int = 0
    follow_up: int = 0
    pruned: int = 0
    skipped: bool = False  # bot disabled

    @property
    def total(self) -> int:
        return self.deferred + self.agenda + self.follow_up


class SchedulerTick:
    """
    Runs the three engines in order.

    A tick runs to completion without yielding to the event loop; manual
    actions never observe a half-applied scan.
    """

    def __init__(
        self,
        deferred: DeferredStartEngine,
        agenda: AgendaEngine,
        followup: FollowUpEngine,
        is_enabled: Callable[[], bool] = lambda: True,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.deferred = deferred
        self.agenda = agenda
        self.followup = followup
        self.is_enabled = is_enabled
        self.clock = clock
        self.ticks = 0

    def run_once(self, now: Optional[datetime] = None) -> TickReport:
        """Evaluate every stream at ``now`` (defaults to the clock)."""
        if not self.is_enabled():
            return TickReport(skipped=True)

        now = now or self.clock()
        self.ticks += 1
        report = TickReport(
            deferred=len(self.deferred.collect_due(now)),
            agenda=len(self.agenda.collect_due(now)),
        )
        report.pruned = self.agenda.prune(now)
        report.follow_up = len(self.followup.scan(now))

        if report.total:
            logger.info(
                f"Tick {self.ticks}: queued deferred={report.deferred} "
                f"agenda={report.agenda} follow_up={report.follow_up}"
            )
        return report
