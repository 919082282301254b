"""Scheduling streams (follow-up, agenda, deferred start), the tick and its runner."""

from followup_bot.scheduling.agenda import AgendaEngine
from followup_bot.scheduling.deferred import DeferredStartEngine
from followup_bot.scheduling.followup import FollowUpEngine
from followup_bot.scheduling.polling_daemon import PeriodicRunner
from followup_bot.scheduling.tick import SchedulerTick, TickReport

__all__ = [
    "AgendaEngine",
    "DeferredStartEngine",
    "FollowUpEngine",
    "PeriodicRunner",
    "SchedulerTick",
    "TickReport",
]
