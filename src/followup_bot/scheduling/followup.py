"""
Follow-Up Engine - Stepped nudges for contacts in the funnel.

A contact walks through the configured step texts (``step0`` .. ``stepK-1``),
one per eligibility period. After each confirmed send the step index advances
and the next send is pushed out by the delay table. Clients are not nudged
through the steps; they get a long-interval post-sale check-in instead.

The engine never sends. :meth:`FollowUpEngine.scan` enqueues at most one
intent per eligible contact and :meth:`FollowUpEngine.on_sent` applies the
state transition once the queue confirms delivery.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from followup_bot.core.models import (
    BotConfig,
    ContactRecord,
    ContactStage,
    IntentKind,
    SendIntent,
)
from followup_bot.messaging.send_queue import SendQueue
from followup_bot.registry.contact_store import ContactStore

logger = logging.getLogger(__name__)

POST_SALE_KEY = "post_sale"
EXTRA_KEY = "extra"

# Stages that keep a contact out of the automatic funnel
_EXCLUDED_STAGES = frozenset({
    ContactStage.LOST.value,
    ContactStage.SCHEDULED_APPOINTMENT.value,
    ContactStage.DEFERRED_START.value,
})


def step_key(index: int) -> str:
    return f"step{index}"


class FollowUpEngine:
    """
    Decides which contacts are due a follow-up and what to send them.

    Attributes:
        contacts: Contact registry.
        queue: Outbound lane.
        config_provider: Returns the live configuration.
        has_deferred_start: Whether a contact has a pending deferred start job.
    """

    def __init__(
        self,
        contacts: ContactStore,
        queue: SendQueue,
        config_provider: Callable[[], BotConfig],
        has_deferred_start: Callable[[str], bool] = lambda handle: False,
    ):
        self.contacts = contacts
        self.queue = queue
        self.config_provider = config_provider
        self.has_deferred_start = has_deferred_start

    def next_message_key(self, record: ContactRecord, config: BotConfig) -> Optional[str]:
        """Message key the contact would receive next, or None when the funnel is exhausted."""
        if record.is_client:
            return POST_SALE_KEY
        total = len(config.messages.steps)
        if record.step_index < total:
            return step_key(record.step_index)
        if record.step_index == total and config.messages.extra.strip():
            return EXTRA_KEY
        return None

    def skip_reason(self, record: ContactRecord, now: datetime, config: BotConfig) -> Optional[str]:
        """
        Why ``record`` is not eligible right now, or None if it is.

        Checks run cheapest first; the reason strings end up in debug logs.
        """
        if record.blocked:
            return "blocked"
        if record.is_client and not config.rules.client_loop_enabled:
            return "client loop disabled"
        if record.is_paused(now):
            return "paused"
        if record.is_manual_off(now):
            return "manual off"
        if record.next_eligible_at is None:
            return "not scheduled"
        if now < record.next_eligible_at:
            return "not due"
        if not record.is_client:
            if record.stage in _EXCLUDED_STAGES or record.stage == ContactStage.CLOSED.value:
                return f"stage {record.stage}"
            min_year = config.rules.min_year_follow_up
            if min_year and record.detected_year and record.detected_year < min_year:
                return f"vehicle year {record.detected_year} < {min_year}"
        if self.has_deferred_start(record.handle):
            return "deferred start pending"
        if self.queue.has_pending(record.handle, [IntentKind.FOLLOW_UP]):
            return "follow-up already queued"
        return None

    def scan(self, now: datetime) -> list[SendIntent]:
        """
        Enqueue one follow-up for every eligible contact.

        Safe to call repeatedly: a contact with a queued follow-up is skipped,
        and a step delivered inside the dedup window is not sent again.

        Returns:
            The intents that were queued.
        """
        config = self.config_provider()
        queued = []
        for record in self.contacts.all():
            reason = self.skip_reason(record, now, config)
            if reason:
                continue

            key = self.next_message_key(record, config)
            if key is None:
                continue
            if record.sent_within(key, now, config.timing.dedup_window):
                logger.debug(f"{record.handle}: {key} sent recently, skipping")
                continue

            text = config.messages.text_for(key)
            if not text.strip():
                logger.debug(f"{record.handle}: no text configured for {key}, skipping")
                continue

            intent = SendIntent(
                handle=record.handle,
                text=text,
                kind=IntentKind.FOLLOW_UP,
                meta={"key": key},
                enqueued_at=now,
            )
            if self.queue.enqueue(intent):
                queued.append(intent)

        if queued:
            logger.info(f"Follow-up scan queued {len(queued)} message(s)")
        return queued

    def on_sent(self, intent: SendIntent, now: datetime) -> None:
        """Advance the contact after a confirmed follow-up send."""
        record = self.contacts.get(intent.handle)
        if record is None:
            return
        config = self.config_provider()
        key = intent.meta.get("key", "")
        record.dedupe[key] = now

        if key == POST_SALE_KEY:
            record.next_eligible_at = now + config.timing.client_loop_interval
        elif key == EXTRA_KEY:
            record.step_index = len(config.messages.steps) + 1
            record.next_eligible_at = None
        elif key.startswith("step"):
            sent_index = int(key[len("step"):])
            new_index = max(record.step_index, sent_index + 1)
            record.step_index = new_index
            record.next_eligible_at = now + config.timing.step_delay(new_index)
            if record.stage == ContactStage.NEW.value:
                record.stage = ContactStage.NEGOTIATING.value
        record.touch(now)
        logger.debug(
            f"{record.handle}: {key} delivered, stepIndex={record.step_index}, "
            f"next={record.next_eligible_at}"
        )
