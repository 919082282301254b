"""
Engagement Bot - One bot instance: state, scheduling streams and admin surface.

Wires the contact store, the three engines, the scheduler tick and the send
queue together around one messaging channel and one key-value store, and
exposes the operations the admin panel and the channel call into.

All mutating methods are synchronous and complete without yielding to the
event loop. Only the queue worker suspends (jitter sleep and the channel
acknowledgement), and it re-validates every intent after waking.

Usage:
    bot = EngagementBot(channel=my_channel, store=JsonFileStore(settings.bot_dir))
    await bot.start()
    bot.schedule_agenda("11999998888", appointment_at)
    await bot.handle_inbound(InboundMessage(handle=..., text="Corolla 2021"))
    await bot.stop()
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from followup_bot.core.config import Settings
from followup_bot.core.events import EventLog, EventType
from followup_bot.core.models import (
    AUTOMATIC_KINDS,
    BotConfig,
    BotStatus,
    ContactRecord,
    ContactStage,
    ConnectionState,
    InboundMessage,
    IntentKind,
    SendIntent,
    SendOutcome,
    TimingConfig,
    deep_merge,
    ensure_utc,
    utc_now,
    wire_patch,
)
from followup_bot.database.kv_store import KeyValueStore
from followup_bot.humanizer.timing import JitterMode, SendJitter
from followup_bot.messaging.channel import MessagingChannel
from followup_bot.messaging.handles import is_direct_handle, resolve_handle
from followup_bot.messaging.inbound import SellerCommand, VehicleParser, match_command, parse_vehicle_info
from followup_bot.messaging.rate_limits import RateLimitCounters, day_key
from followup_bot.messaging.send_gate import SendGate
from followup_bot.messaging.send_queue import DrainReport, SendQueue
from followup_bot.messaging.templates import apply_template
from followup_bot.registry.contact_store import ContactStore
from followup_bot.scheduling.agenda import AgendaEngine, appointment_template_data
from followup_bot.scheduling.deferred import DeferredStartEngine
from followup_bot.scheduling.followup import FollowUpEngine
from followup_bot.scheduling.polling_daemon import PeriodicRunner
from followup_bot.scheduling.tick import SchedulerTick, TickReport

logger = logging.getLogger(__name__)

CONFIG_KEY = "config"
COUNTERS_KEY = "counters"
QUEUE_KEY = "queue"
STATE_KEY = "state"

EDITABLE_CONTACT_FIELDS = frozenset({
    "name", "notes", "tags", "detected_year", "detected_model", "next_eligible_at", "stage",
})


class EngagementBot:
    """
    Facade over one bot instance.

    Attributes:
        channel: Messaging collaborator.
        store: Persistence backend.
        settings: Process settings.
        config: Live business configuration.
        enabled: When False the tick enqueues nothing (the queue still drains).
        contacts: Contact registry.
        queue: The single outbound lane.
        events: Domain event log.
    """

    def __init__(
        self,
        channel: MessagingChannel,
        store: KeyValueStore,
        settings: Optional[Settings] = None,
        events: Optional[EventLog] = None,
        vehicle_parser: VehicleParser = parse_vehicle_info,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Any] = asyncio.sleep,
        jitter: Optional[SendJitter] = None,
        console=None,
    ):
        """
        Build the bot. Nothing is loaded until :meth:`load` or :meth:`start`.

        Args:
            channel: Channel session used for every send.
            store: Backend for contacts, reminders, jobs, counters and config.
            settings: Process settings; defaults are used when omitted.
            events: Event sink; an in-memory log is created when omitted.
            vehicle_parser: Extracts year/model hints from inbound text.
            clock: Source of "now" (aware UTC).
            sleep: Coroutine used for the pre-send jitter delay.
            jitter: Delay source; built from configuration when omitted.
            console: Rich console passed to the periodic runners.
        """
        self.channel = channel
        self.store = store
        self.settings = settings or Settings()
        self.events = events or EventLog()
        self.vehicle_parser = vehicle_parser
        self.clock = clock

        self.config = self._default_config()
        self.enabled = True
        self.total_sent = 0
        self.last_error: Optional[str] = None
        self.last_update = clock()
        self.connection_state = ConnectionState(channel.connection_state())

        self.contacts = ContactStore(store)
        self.counters = RateLimitCounters()
        self.gate = SendGate(self.counters, lambda: self.config, self.is_connected)
        self.jitter = jitter or SendJitter(
            self.config.timing.jitter_min_ms, self.config.timing.jitter_max_ms
        )
        self.queue = SendQueue(
            gate=self.gate,
            channel=channel,
            jitter=self.jitter,
            validator=self._validate_intent,
            on_sent=self._on_sent,
            on_dropped=self._on_dropped,
            timeout_provider=lambda: self.config.timing.send_timeout_seconds,
            clock=clock,
            sleep=sleep,
        )
        config_provider = lambda: self.config
        self.deferred = DeferredStartEngine(self.contacts, self.queue, store, config_provider)
        self.agenda = AgendaEngine(self.contacts, self.queue, store, config_provider)
        self.followup = FollowUpEngine(
            self.contacts, self.queue, config_provider, has_deferred_start=self.deferred.has_pending
        )
        self.tick = SchedulerTick(
            self.deferred, self.agenda, self.followup, is_enabled=lambda: self.enabled, clock=clock
        )
        self.tick_runner = PeriodicRunner(
            "tick", self.run_tick, self.settings.tick_interval_seconds,
            on_error=self._record_error, console=console,
        )
        self.queue_runner = PeriodicRunner(
            "queue", self.run_queue, self.settings.queue_poll_seconds,
            on_error=self._record_error, console=console,
        )

    def _default_config(self) -> BotConfig:
        return BotConfig(timing=TimingConfig(
            jitter_min_ms=self.settings.min_delay_ms,
            jitter_max_ms=max(self.settings.max_delay_ms, self.settings.min_delay_ms),
            send_timeout_seconds=self.settings.send_timeout_seconds,
        ))

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def load(self) -> None:
        """
        Load configuration and all state from the store.

        Raises:
            StoreError: If the backend cannot be read.
            pydantic.ValidationError: If the stored configuration is invalid.
        """
        stored = self.store.load(CONFIG_KEY, None)
        if stored:
            base = self._default_config().model_dump(by_alias=True, mode="json")
            self.config = BotConfig.model_validate(deep_merge(base, wire_patch(BotConfig, stored)))
        self._apply_timing()

        state = self.store.load(STATE_KEY, {}) or {}
        self.enabled = bool(state.get("enabled", True))
        self.total_sent = int(state.get("totalSent", 0))

        self.contacts.load()
        self.agenda.load()
        self.deferred.load()
        self.counters = RateLimitCounters.model_validate(self.store.load(COUNTERS_KEY, {}) or {})
        self.gate.counters = self.counters

        restored = self.queue.restore(self.store.load(QUEUE_KEY, []) or [])
        for intent in restored:
            self._mark_in_flight(intent)
        if restored:
            logger.info(f"Restored {len(restored)} queued intent(s)")
            self.store.save(QUEUE_KEY, [])

    def persist(self) -> None:
        """Write contacts, reminders, jobs, counters and flags to the store."""
        self.contacts.save()
        self.agenda.save()
        self.deferred.save()
        self.store.save(COUNTERS_KEY, self.counters.model_dump(mode="json"))
        self.store.save(STATE_KEY, {"enabled": self.enabled, "totalSent": self.total_sent})

    async def start(self) -> None:
        """Load state and start the tick and queue loops."""
        self.load()
        await self.tick_runner.start()
        await self.queue_runner.start()

    async def stop(self) -> None:
        """Stop both loops, save the pending automatic queue and all state."""
        await self.tick_runner.stop()
        await self.queue_runner.stop()
        self.store.save(QUEUE_KEY, self.queue.snapshot())
        self.persist()

    async def run_tick(self) -> TickReport:
        """One scheduler tick; persists when anything changed."""
        report = self.tick.run_once(self.clock())
        self.last_update = self.clock()
        if report.total or report.pruned:
            self.persist()
        return report

    async def run_queue(self) -> DrainReport:
        """One drain cycle of the send queue."""
        self._apply_timing()
        report = await self.queue.drain_once()
        if report.sent or report.dropped or report.failed:
            if self.queue.last_error:
                self.last_error = self.queue.last_error
            self.persist()
        return report

    def _apply_timing(self) -> None:
        self.jitter.configure(self.config.timing.jitter_min_ms, self.config.timing.jitter_max_ms)
        self.jitter.mode = JitterMode(self.config.timing.jitter_mode)

    def _record_error(self, error: Exception) -> None:
        self.last_error = f"{type(error).__name__}: {error}"
        logger.error(f"Cycle failed: {self.last_error}")
        self.events.emit(EventType.TICK_ERROR, at=self.clock(), error=self.last_error)

    # =========================================================================
    # QUEUE CALLBACKS
    # =========================================================================

    def _validate_intent(self, intent: SendIntent, now: datetime) -> Optional[str]:
        if self.contacts.is_blocked(intent.handle):
            return "blocked"
        if intent.kind in AUTOMATIC_KINDS:
            record = self.contacts.get(intent.handle)
            if record is not None:
                if record.is_paused(now):
                    return "paused"
                if record.is_manual_off(now):
                    return "manual off"
                if intent.kind == IntentKind.FOLLOW_UP.value and record.stage == ContactStage.LOST.value:
                    return "removed from funnel"
        return None

    def _on_sent(self, intent: SendIntent, now: datetime) -> None:
        record = self.contacts.get_or_create(intent.handle, now)
        record.last_outbound_at = now
        record.touch(now)
        if intent.kind == IntentKind.FOLLOW_UP.value:
            self.followup.on_sent(intent, now)
        elif intent.kind == IntentKind.AGENDA.value:
            self.agenda.on_sent(intent, now)
        elif intent.kind == IntentKind.DEFERRED_START.value:
            self.deferred.on_sent(intent, now)
        self.total_sent += 1
        event = EventType.MANUAL_SENT if intent.kind == IntentKind.MANUAL.value else EventType.AUTO_SENT
        self.events.emit(event, at=now, handle=intent.handle, kind=intent.kind, key=intent.meta.get("key"))

    def _on_dropped(self, intent: SendIntent, reason: str) -> None:
        self._release(intent)
        if reason not in ("blocked", "paused", "manual off", "cancelled", "removed from funnel"):
            self.last_error = f"dropped {intent.kind} for {intent.handle}: {reason}"
        self.events.emit(
            EventType.SEND_DROPPED, at=self.clock(),
            handle=intent.handle, kind=intent.kind, reason=reason,
        )

    def _release(self, intent: SendIntent) -> None:
        if intent.kind == IntentKind.AGENDA.value:
            self.agenda.on_dropped(intent)
        elif intent.kind == IntentKind.DEFERRED_START.value:
            self.deferred.on_dropped(intent)

    def _mark_in_flight(self, intent: SendIntent) -> None:
        if intent.kind == IntentKind.AGENDA.value:
            self.agenda.mark_in_flight(intent)
        elif intent.kind == IntentKind.DEFERRED_START.value:
            self.deferred.mark_in_flight(intent)

    def _strip_queue(self, handle: str, kinds=None) -> int:
        removed = self.queue.remove(handle, kinds)
        for intent in removed:
            self._release(intent)
        return len(removed)

    # =========================================================================
    # CHANNEL EVENTS
    # =========================================================================

    def attach_channel(self) -> None:
        """Register for the channel's inbound messages and connection changes."""
        self.channel.add_listener(self.handle_inbound, self.on_connection_update)

    def is_connected(self) -> bool:
        """Ask the channel for its current state; records any change."""
        state = ConnectionState(self.channel.connection_state())
        if state != self.connection_state:
            self.on_connection_update(state)
        return state == ConnectionState.CONNECTED

    def on_connection_update(self, state: ConnectionState) -> None:
        """Record a connectivity change reported by the channel."""
        state = ConnectionState(state)
        if state == self.connection_state:
            return
        self.connection_state = state
        self.last_update = self.clock()
        logger.info(f"Channel {state.value}")
        self.events.emit(EventType.CONNECTION, at=self.last_update, state=state.value)

    async def handle_inbound(self, message: InboundMessage) -> Optional[SellerCommand]:
        """
        Process one inbound message event.

        Messages typed by the seller (``from_self``) are matched against the
        configured commands. Messages from the contact update its record and
        seed a fresh contact into the funnel.

        Returns:
            The seller command applied, if any.
        """
        if not is_direct_handle(message.handle):
            return None
        now = ensure_utc(message.timestamp)

        if message.from_self:
            command = match_command(message.text, self.config.commands)
            if command is not None:
                self._apply_command(command, message.handle)
            return command

        record = self.contacts.get_or_create(message.handle, now)
        fresh = (
            record.last_inbound_at is None
            and record.last_outbound_at is None
            and record.next_eligible_at is None
            and record.stage == ContactStage.NEW.value
        )
        record.last_inbound_at = now

        info = self.vehicle_parser(message.text)
        if info.year:
            record.detected_year = info.year
            if info.model:
                record.detected_model = info.model

        if not record.blocked:
            if fresh:
                record.next_eligible_at = now
            elif self.config.rules.restart_on_inbound and self._funnel_finished(record):
                logger.info(f"Restarting funnel for {record.handle} after inbound message")
                record.step_index = 0
                record.stage = ContactStage.NEW.value
                record.dedupe = {}
                record.next_eligible_at = now
        record.touch(now)

        self.events.emit(EventType.INBOUND, at=now, handle=record.handle, year=record.detected_year)
        self.persist()
        return None

    def _funnel_finished(self, record: ContactRecord) -> bool:
        if record.is_client:
            return False
        if record.stage == ContactStage.LOST.value:
            return True
        return self.followup.next_message_key(record, self.config) is None

    def _apply_command(self, command: SellerCommand, handle: str) -> None:
        logger.info(f"Seller command {command.value} for {handle}")
        if command == SellerCommand.STOP:
            self.block(handle, reason="seller command")
        elif command == SellerCommand.PAUSE:
            self.pause(handle)
        elif command == SellerCommand.CLIENT:
            self.mark_as_client(handle)
        elif command == SellerCommand.REMOVE:
            self.remove_from_funnel(handle)
        elif command == SellerCommand.BOT_OFF:
            self.manual_off(handle)

    # =========================================================================
    # ADMIN: BOT
    # =========================================================================

    def get_status(self) -> BotStatus:
        return BotStatus(
            connected=self.is_connected(),
            enabled=self.enabled,
            queue_size=self.queue.size,
            last_error=self.last_error or self.queue.last_error,
            last_update=self.last_update,
        )

    def set_enabled(self, enabled: bool) -> BotStatus:
        """Turn automatic scheduling on or off. Queued intents still drain."""
        self.enabled = bool(enabled)
        self.events.emit(EventType.ENABLED_CHANGED, at=self.clock(), enabled=self.enabled)
        self.persist()
        return self.get_status()

    def update_config(self, partial: dict) -> BotConfig:
        """
        Deep-merge ``partial`` into the live configuration.

        Lists replace wholesale; nested sections merge key by key. Keys may be
        camelCase or snake_case.

        Raises:
            pydantic.ValidationError: If the merged configuration is invalid
                (the live configuration is left untouched).
        """
        current = self.config.model_dump(by_alias=True, mode="json")
        merged = BotConfig.model_validate(deep_merge(current, wire_patch(BotConfig, partial or {})))
        self.config = merged
        self._apply_timing()
        self.store.save(CONFIG_KEY, merged.model_dump(by_alias=True, mode="json"))
        self.events.emit(EventType.CONFIG_UPDATED, at=self.clock(), keys=sorted((partial or {}).keys()))
        return merged

    def update_messages(self, partial: dict) -> BotConfig:
        return self.update_config({"messages": partial})

    def get_stats(self) -> dict[str, Any]:
        """
        Aggregate counters for the panel.

        Returns:
            Dictionary with contact counts per stage, client/blocked counts,
            vehicle-year split against the minimum year, sends today and in
            total, queue size and pending reminders/jobs.
        """
        now = self.clock()
        min_year = self.config.rules.min_year_follow_up
        records = self.contacts.all()
        below = sum(1 for r in records if min_year and r.detected_year and r.detected_year < min_year)
        known = sum(1 for r in records if r.detected_year)
        next_deferred = self.deferred.next_fire()
        return {
            "contacts": len(records),
            "byStage": self.contacts.count_by_stage(),
            "clients": sum(1 for r in records if r.is_client),
            "blocked": sum(1 for r in records if r.blocked),
            "vehicleYears": {
                "belowMinimum": below,
                "atOrAboveMinimum": known - below,
                "unknown": len(records) - known,
            },
            "sentToday": self.counters.by_day.get(day_key(now), 0),
            "totalSent": self.total_sent,
            "queueSize": self.queue.size,
            "pendingAgenda": sum(1 for e in self.agenda.entries if not e.sent),
            "pendingDeferred": len(self.deferred.jobs),
            "nextDeferredAt": next_deferred.isoformat() if next_deferred else None,
        }

    # =========================================================================
    # ADMIN: CONTACTS
    # =========================================================================

    def _handle(self, target: str) -> str:
        return resolve_handle(target, self.settings.default_country_code)

    def get_contact(self, target: str) -> Optional[dict[str, Any]]:
        """Contact record plus its pending reminders, deferred job and queue entries."""
        handle = self._handle(target)
        record = self.contacts.get(handle)
        if record is None:
            return None
        job = self.deferred.jobs.get(handle)
        data = record.model_dump(by_alias=True, mode="json")
        data["pendingAgenda"] = [
            e.model_dump(by_alias=True, mode="json") for e in self.agenda.pending_for(handle)
        ]
        data["deferredStart"] = job.model_dump(by_alias=True, mode="json") if job else None
        data["queued"] = sum(1 for i in self.queue.pending() if i.handle == handle)
        return data

    def list_contacts(self, stage: Optional[str] = None) -> list[dict[str, Any]]:
        records = self.contacts.all()
        if stage:
            records = [r for r in records if r.stage == ContactStage(stage).value]
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return [r.model_dump(by_alias=True, mode="json") for r in records]

    def pause(self, target: str, hours: Optional[float] = None) -> ContactRecord:
        """Suspend automatic sends to a contact for ``hours`` (default from config)."""
        now = self.clock()
        hours = self.config.timing.pause_hours if hours is None else hours
        if hours < 0:
            raise ValueError("Pause duration must be non-negative")
        record = self.contacts.get_or_create(self._handle(target), now)
        record.paused_until = now + timedelta(hours=hours)
        record.touch(now)
        self._strip_queue(record.handle, AUTOMATIC_KINDS)
        self.events.emit(EventType.PAUSED, at=now, handle=record.handle, until=record.paused_until.isoformat())
        self.persist()
        return record

    def manual_off(self, target: str, hours: Optional[float] = None) -> ContactRecord:
        """Switch the bot off for one contact while the seller talks to them."""
        now = self.clock()
        hours = self.config.timing.manual_off_hours if hours is None else hours
        if hours < 0:
            raise ValueError("Manual-off duration must be non-negative")
        record = self.contacts.get_or_create(self._handle(target), now)
        record.manual_off_until = now + timedelta(hours=hours)
        record.touch(now)
        self._strip_queue(record.handle, AUTOMATIC_KINDS)
        self.events.emit(
            EventType.MANUAL_OFF, at=now, handle=record.handle, until=record.manual_off_until.isoformat()
        )
        self.persist()
        return record

    def block(self, target: str, reason: str = "manual") -> ContactRecord:
        """Permanently exclude a contact; every pending intent is stripped."""
        now = self.clock()
        handle = self._handle(target)
        record = self.contacts.get_or_create(handle, now)
        self._strip_queue(handle)
        self.agenda.cancel_sequence(handle)
        self.deferred.cancel_start(handle, now)
        self.contacts.mark_blocked(record, reason, now)
        self.events.emit(EventType.BLOCKED, at=now, handle=handle, reason=reason)
        self.persist()
        return record

    def mark_as_client(self, target: str) -> ContactRecord:
        """Close the deal: the contact leaves the steps and enters the client loop."""
        now = self.clock()
        record = self.contacts.get_or_create(self._handle(target), now)
        record.is_client = True
        record.stage = ContactStage.CLOSED.value
        record.next_eligible_at = now + self.config.timing.client_loop_interval
        record.touch(now)
        self._strip_queue(record.handle, [IntentKind.FOLLOW_UP])
        self.events.emit(EventType.MARKED_CLIENT, at=now, handle=record.handle)
        self.persist()
        return record

    def remove_from_funnel(self, target: str) -> ContactRecord:
        """
        Take a contact out of every automatic stream.

        Scheduling fields are cleared; history (name, notes, timestamps,
        detected vehicle) is kept.
        """
        now = self.clock()
        handle = self._handle(target)
        record = self.contacts.get_or_create(handle, now)
        self._strip_queue(handle, AUTOMATIC_KINDS)
        self.agenda.cancel_sequence(handle)
        self.deferred.cancel_start(handle, now)
        record.stage = ContactStage.LOST.value
        record.next_eligible_at = None
        record.paused_until = None
        record.manual_off_until = None
        record.dedupe = {}
        record.touch(now)
        self.events.emit(EventType.REMOVED, at=now, handle=handle)
        self.persist()
        return record

    def update_contact(self, target: str, changes: dict[str, Any]) -> ContactRecord:
        """
        Edit panel-editable fields of a contact (created if unknown).

        ``blocked`` is accepted too and routed to block/unblock.

        Raises:
            ValueError: On a non-editable field.
            pydantic.ValidationError: On invalid values.
        """
        now = self.clock()
        handle = self._handle(target)
        record = self.contacts.get_or_create(handle, now)
        changes = dict(changes or {})

        blocked = changes.pop("blocked", None)
        by_alias = {f.alias: name for name, f in ContactRecord.model_fields.items() if f.alias}
        normalized = {by_alias.get(k, k): v for k, v in changes.items()}
        unknown = set(normalized) - EDITABLE_CONTACT_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")

        if normalized:
            data = record.model_dump()
            data.update(normalized)
            updated = ContactRecord.model_validate(data)
            for name in normalized:
                setattr(record, name, getattr(updated, name))

        if blocked is True and not record.blocked:
            self.block(handle, reason="panel")
        elif blocked is False and record.blocked:
            self.contacts.unblock(record, now)
            self.events.emit(EventType.UNBLOCKED, at=now, handle=handle)

        record.touch(now)
        self.events.emit(EventType.CONTACT_UPDATED, at=now, handle=handle, fields=sorted(normalized))
        self.persist()
        return record

    # =========================================================================
    # ADMIN: SCHEDULING
    # =========================================================================

    def schedule_agenda(
        self,
        target: str,
        appointment_at: datetime,
        template_data: Optional[dict[str, str]] = None,
        offsets_days: Optional[list[float]] = None,
    ) -> list[dict[str, Any]]:
        """Create the reminder sequence for an appointment, replacing unsent reminders."""
        now = self.clock()
        handle = self._handle(target)
        if self.contacts.is_blocked(handle):
            raise ValueError(f"Contact {handle} is blocked")
        entries = self.agenda.schedule_sequence(handle, appointment_at, now, offsets_days, template_data)
        self.events.emit(
            EventType.AGENDA_SCHEDULED, at=now, handle=handle,
            appointment_at=ensure_utc(appointment_at).isoformat(), reminders=len(entries),
        )
        self.persist()
        return [e.model_dump(by_alias=True, mode="json") for e in entries]

    def cancel_agenda(self, target: str) -> int:
        now = self.clock()
        handle = self._handle(target)
        removed = self.agenda.cancel_sequence(handle)
        record = self.contacts.get(handle)
        if record is not None and record.stage == ContactStage.SCHEDULED_APPOINTMENT.value:
            record.stage = ContactStage.NEGOTIATING.value
            record.touch(now)
        self.events.emit(EventType.AGENDA_CANCELLED, at=now, handle=handle, removed=removed)
        self.persist()
        return removed

    def schedule_deferred_start(self, target: str, fires_at: datetime, text: str = "") -> dict[str, Any]:
        now = self.clock()
        handle = self._handle(target)
        job = self.deferred.schedule_start(handle, fires_at, text, now)
        self.events.emit(EventType.DEFERRED_SCHEDULED, at=now, handle=handle, fires_at=job.fires_at.isoformat())
        self.persist()
        return job.model_dump(by_alias=True, mode="json")

    def cancel_deferred_start(self, target: str) -> bool:
        now = self.clock()
        handle = self._handle(target)
        cancelled = self.deferred.cancel_start(handle, now)
        if cancelled:
            self.events.emit(EventType.DEFERRED_CANCELLED, at=now, handle=handle)
            self.persist()
        return cancelled

    # =========================================================================
    # ADMIN: MANUAL SENDS
    # =========================================================================

    async def send_immediate(self, target: str, text: str) -> SendOutcome:
        """
        Send ``text`` now through the queue, ahead of automatic intents.

        The gate still applies: a denial is returned to the caller rather than
        retried later.

        Raises:
            ValueError: If the target is not a valid phone/handle or the text is empty.
        """
        handle = self._handle(target)
        if not (text or "").strip():
            raise ValueError("Message text cannot be empty")
        if self.contacts.is_blocked(handle):
            return SendOutcome(ok=False, error="blocked")

        now = self.clock()
        decision = self.gate.check(handle, now)
        if not decision.allowed:
            return SendOutcome(ok=False, error=decision.reason.value)

        self.contacts.get_or_create(handle, now)
        intent = SendIntent(handle=handle, text=text, kind=IntentKind.MANUAL, enqueued_at=now)
        future = self.queue.submit(intent)
        if not self.queue_runner.is_running and not self.queue.draining:
            await self.run_queue()
        return await future

    async def send_quote(
        self,
        target: str,
        quote_key: Optional[str] = None,
        data: Optional[dict[str, str]] = None,
    ) -> SendOutcome:
        """Render a quote template and send it; the contact moves to ``quoted``."""
        key = quote_key or self.config.default_quote
        quote = self.config.quotes.get(key)
        if quote is None:
            raise ValueError(f"Unknown quote template: {key!r}")
        handle = self._handle(target)
        record = self.contacts.get(handle)
        values = {}
        if record is not None:
            values = {"VEICULO": record.detected_model or "", "ANO": str(record.detected_year or "")}
        values.update({k.upper(): str(v) for k, v in (data or {}).items()})

        outcome = await self.send_immediate(handle, apply_template(quote.template, values))
        if outcome.ok:
            record = self.contacts.get_or_create(handle, self.clock())
            if record.stage in (ContactStage.NEW.value, ContactStage.NEGOTIATING.value):
                record.stage = ContactStage.QUOTED.value
                record.touch(self.clock())
                self.persist()
        return outcome

    async def send_confirmation(
        self,
        target: str,
        appointment_at: Optional[datetime] = None,
        template_data: Optional[dict[str, str]] = None,
    ) -> SendOutcome:
        """Send the appointment confirmation template immediately."""
        values = {}
        if appointment_at is not None:
            values = appointment_template_data(ensure_utc(appointment_at), self.config.window.timezone)
        values.update({k.upper(): str(v) for k, v in (template_data or {}).items()})
        template = self.config.messages.confirm_template
        if not template.strip():
            raise ValueError("No confirmation template configured")
        return await self.send_immediate(target, apply_template(template, values))
