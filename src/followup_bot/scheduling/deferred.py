"""
Deferred Start Engine - One-shot "start the conversation at this time" jobs.

A deferred start replaces the first follow-up step: when it fires, the
contact is treated as if step 0 had just been delivered and continues in the
stepped funnel from step 1.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from pydantic import ValidationError

from followup_bot.core.models import (
    BotConfig,
    ContactStage,
    DeferredStartJob,
    IntentKind,
    SendIntent,
    ensure_utc,
)
from followup_bot.database.kv_store import KeyValueStore
from followup_bot.messaging.send_queue import SendQueue
from followup_bot.registry.contact_store import ContactStore

logger = logging.getLogger(__name__)

DEFERRED_KEY = "deferred"


class DeferredStartEngine:
    """
    At most one pending job per contact; scheduling again overwrites it.

    Attributes:
        contacts: Contact registry.
        queue: Outbound lane.
        store: Persistence backend for the jobs.
        config_provider: Returns the live configuration.
        jobs: Handle -> pending job.
    """

    def __init__(
        self,
        contacts: ContactStore,
        queue: SendQueue,
        store: KeyValueStore,
        config_provider: Callable[[], BotConfig],
    ):
        self.contacts = contacts
        self.queue = queue
        self.store = store
        self.config_provider = config_provider
        self.jobs: dict[str, DeferredStartJob] = {}
        self._in_flight: set[str] = set()

    def load(self) -> None:
        self.jobs = {}
        for handle, raw in (self.store.load(DEFERRED_KEY, {}) or {}).items():
            try:
                self.jobs[handle] = DeferredStartJob.model_validate({"handle": handle, **raw})
            except ValidationError as e:
                logger.warning(f"Skipping invalid deferred start for {handle!r}: {e}")

    def save(self) -> None:
        self.store.save(
            DEFERRED_KEY,
            {h: job.model_dump(by_alias=True, mode="json") for h, job in self.jobs.items()},
        )

    def has_pending(self, handle: str) -> bool:
        return handle in self.jobs

    def schedule_start(self, handle: str, fires_at: datetime, text: str, now: datetime) -> DeferredStartJob:
        """
        Create or overwrite the contact's deferred start.

        Args:
            handle: Contact handle.
            fires_at: When the message should go out.
            text: Message text; empty means "use the step-0 text".
            now: Current time.

        Returns:
            The stored job.
        """
        if self.contacts.is_blocked(handle):
            raise ValueError(f"Contact {handle} is blocked")

        self.queue.remove(handle, [IntentKind.DEFERRED_START])
        self._in_flight.discard(handle)

        job = DeferredStartJob(handle=handle, fires_at=ensure_utc(fires_at), text=text or "", created_at=now)
        self.jobs[handle] = job

        record = self.contacts.get_or_create(handle, now)
        record.stage = ContactStage.DEFERRED_START.value
        record.touch(now)
        logger.info(f"Deferred start for {handle} at {job.fires_at}")
        return job

    def cancel_start(self, handle: str, now: datetime) -> bool:
        """Delete the contact's pending job and any queued intent for it."""
        job = self.jobs.pop(handle, None)
        self._in_flight.discard(handle)
        self.queue.remove(handle, [IntentKind.DEFERRED_START])
        record = self.contacts.get(handle)
        if record is not None and record.stage == ContactStage.DEFERRED_START.value:
            record.stage = ContactStage.NEW.value
            record.touch(now)
        return job is not None

    def resolve_text(self, job: DeferredStartJob, config: BotConfig) -> str:
        return job.text.strip() or config.messages.text_for("step0")

    def collect_due(self, now: datetime) -> list[SendIntent]:
        """Enqueue each due job once; jobs for blocked contacts are discarded."""
        config = self.config_provider()
        queued = []
        for handle, job in list(self.jobs.items()):
            if handle in self._in_flight or job.fires_at > now:
                continue
            if self.contacts.is_blocked(handle):
                logger.info(f"Discarding deferred start for blocked contact {handle}")
                del self.jobs[handle]
                continue
            record = self.contacts.get(handle)
            if record is not None and record.is_on_hold(now):
                continue

            text = self.resolve_text(job, config)
            if not text.strip():
                logger.debug(f"{handle}: deferred start has no text and no step0 configured")
                continue

            intent = SendIntent(
                handle=handle,
                text=text,
                kind=IntentKind.DEFERRED_START,
                meta={"key": "step0"},
                enqueued_at=now,
            )
            if self.queue.enqueue(intent):
                self._in_flight.add(handle)
                queued.append(intent)
        return queued

    def mark_in_flight(self, intent: SendIntent) -> None:
        self._in_flight.add(intent.handle)

    def on_sent(self, intent: SendIntent, now: datetime) -> None:
        """Delete the job and seed the stepped funnel at step 1."""
        self._in_flight.discard(intent.handle)
        self.jobs.pop(intent.handle, None)
        record = self.contacts.get_or_create(intent.handle, now)
        config = self.config_provider()
        record.step_index = max(record.step_index, 1)
        record.dedupe["step0"] = now
        record.next_eligible_at = now + config.timing.step_delay(record.step_index)
        record.stage = ContactStage.NEGOTIATING.value
        record.touch(now)

    def on_dropped(self, intent: SendIntent) -> None:
        self._in_flight.discard(intent.handle)

    def next_fire(self) -> Optional[datetime]:
        return min((j.fires_at for j in self.jobs.values()), default=None)
