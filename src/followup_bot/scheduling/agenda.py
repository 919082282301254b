"""
Agenda Engine - Reminder sequences anchored to an appointment.

Scheduling an appointment creates one reminder per configured offset
(default 7, 3 and 1 days before). Each reminder uses the message key
``agenda{i}`` rendered with the appointment's template data. Reminders whose
firing time is already in the past are never created, and a due reminder whose
appointment has already happened is discarded instead of sent.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import ValidationError

from followup_bot.core.models import (
    AgendaEntry,
    BotConfig,
    ContactStage,
    IntentKind,
    SendIntent,
    ensure_utc,
)
from followup_bot.database.kv_store import KeyValueStore
from followup_bot.messaging.send_queue import SendQueue
from followup_bot.messaging.templates import apply_template
from followup_bot.registry.contact_store import ContactStore
from followup_bot.temporal.window import local_time

logger = logging.getLogger(__name__)

AGENDAS_KEY = "agendas"


def appointment_template_data(appointment_at: datetime, tz_name: Optional[str]) -> dict[str, str]:
    """Default ``DATA``/``HORA`` placeholders in the business time zone."""
    local = local_time(appointment_at, tz_name)
    return {"DATA": local.strftime("%d/%m/%Y"), "HORA": local.strftime("%H:%M")}


class AgendaEngine:
    """
    Owns every reminder entry and turns due ones into send intents.

    Attributes:
        contacts: Contact registry.
        queue: Outbound lane.
        store: Persistence backend for the entries.
        config_provider: Returns the live configuration.
        entries: All known entries, sent and unsent.
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
        self.entries: list[AgendaEntry] = []
        self._in_flight: set[str] = set()

    def load(self) -> None:
        self.entries = []
        for raw in self.store.load(AGENDAS_KEY, []) or []:
            try:
                self.entries.append(AgendaEntry.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Skipping invalid agenda entry: {e}")

    def save(self) -> None:
        self.store.save(
            AGENDAS_KEY,
            [e.model_dump(by_alias=True, mode="json") for e in self.entries],
        )

    def schedule_sequence(
        self,
        handle: str,
        appointment_at: datetime,
        now: datetime,
        offsets_days: Optional[list[float]] = None,
        template_data: Optional[dict[str, str]] = None,
    ) -> list[AgendaEntry]:
        """
        Replace the contact's unsent reminders with a new sequence.

        Args:
            handle: Contact handle.
            appointment_at: Appointment instant.
            now: Current time; offsets landing before it are dropped.
            offsets_days: Days before the appointment, defaults to configuration.
            template_data: Extra placeholders; ``DATA``/``HORA`` are derived
                from the appointment when missing.

        Returns:
            The entries created (possibly empty).
        """
        config = self.config_provider()
        appointment_at = ensure_utc(appointment_at)
        offsets = offsets_days if offsets_days is not None else config.timing.agenda_offsets_days
        if any(o < 0 for o in offsets):
            raise ValueError("Agenda offsets must be non-negative")

        self.cancel_sequence(handle)

        data = appointment_template_data(appointment_at, config.window.timezone)
        data.update({k.upper(): str(v) for k, v in (template_data or {}).items()})

        created = []
        for i, days in enumerate(offsets):
            fires_at = appointment_at - timedelta(days=days)
            if fires_at <= now:
                logger.debug(f"{handle}: agenda{i} at {fires_at} already passed, dropped")
                continue
            created.append(AgendaEntry(
                handle=handle,
                offset_key=f"agenda{i}",
                fires_at=fires_at,
                appointment_at=appointment_at,
                template_data=data,
            ))
        self.entries.extend(created)

        record = self.contacts.get_or_create(handle, now)
        record.stage = ContactStage.SCHEDULED_APPOINTMENT.value
        record.touch(now)
        logger.info(f"Scheduled {len(created)} reminder(s) for {handle} before {appointment_at}")
        return created

    def cancel_sequence(self, handle: str) -> int:
        """Remove the contact's unsent reminders and queued agenda intents.

        Returns:
            Number of entries removed.
        """
        before = len(self.entries)
        removed_ids = {e.id for e in self.entries if e.handle == handle and not e.sent}
        self.entries = [e for e in self.entries if e.id not in removed_ids]
        self._in_flight -= removed_ids
        self.queue.remove(handle, [IntentKind.AGENDA])
        return before - len(self.entries)

    def pending_for(self, handle: str) -> list[AgendaEntry]:
        return [e for e in self.entries if e.handle == handle and not e.sent]

    def collect_due(self, now: datetime) -> list[SendIntent]:
        """Enqueue every due, unsent reminder not already in flight."""
        config = self.config_provider()
        queued = []
        discarded = []
        for entry in self.entries:
            if entry.sent or entry.id in self._in_flight or entry.fires_at > now:
                continue
            if entry.appointment_at <= now:
                discarded.append(entry.id)
                continue
            record = self.contacts.get(entry.handle)
            if record is not None and record.blocked:
                discarded.append(entry.id)
                continue
            if record is not None and record.is_on_hold(now):
                continue

            template = config.messages.text_for(entry.offset_key)
            if not template.strip():
                logger.debug(f"No text configured for {entry.offset_key}, skipping")
                continue

            intent = SendIntent(
                handle=entry.handle,
                text=apply_template(template, entry.template_data),
                kind=IntentKind.AGENDA,
                meta={"key": entry.offset_key, "entry_id": entry.id},
                enqueued_at=now,
            )
            if self.queue.enqueue(intent):
                self._in_flight.add(entry.id)
                queued.append(intent)

        if discarded:
            self.entries = [e for e in self.entries if e.id not in discarded]
            logger.info(f"Discarded {len(discarded)} stale reminder(s)")
        return queued

    def prune(self, now: datetime) -> int:
        """Forget sent reminders older than the retention period."""
        retention = timedelta(days=self.config_provider().timing.agenda_retention_days)
        before = len(self.entries)
        self.entries = [
            e for e in self.entries
            if not (e.sent and now - e.fires_at > retention)
        ]
        return before - len(self.entries)

    def mark_in_flight(self, intent: SendIntent) -> None:
        entry_id = intent.meta.get("entry_id")
        if entry_id:
            self._in_flight.add(entry_id)

    def on_sent(self, intent: SendIntent, now: datetime) -> None:
        entry_id = intent.meta.get("entry_id")
        self._in_flight.discard(entry_id)
        for entry in self.entries:
            if entry.id == entry_id:
                entry.sent = True
                entry.sent_at = now
                break

    def on_dropped(self, intent: SendIntent) -> None:
        self._in_flight.discard(intent.meta.get("entry_id"))
