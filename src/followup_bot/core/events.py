"""
Domain event log.

Every externally visible action (sent, dropped, blocked, paused, agenda
scheduled ...) is appended as one JSON line to ``events.jsonl`` in the bot's
data directory and fanned out to in-process listeners (the panel subscribes
here). Listener failures are logged and never interrupt the caller.
"""
import json
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from followup_bot.core.models import utc_now

logger = logging.getLogger(__name__)

EventListener = Callable[[dict[str, Any]], None]


class EventType(str, Enum):
    """Events emitted by the bot."""
    AUTO_SENT = "auto_sent"
    MANUAL_SENT = "manual_sent"
    SEND_DROPPED = "send_dropped"
    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"
    PAUSED = "paused"
    MANUAL_OFF = "manual_off"
    MARKED_CLIENT = "marked_client"
    REMOVED = "removed"
    CONTACT_UPDATED = "contact_updated"
    INBOUND = "inbound"
    AGENDA_SCHEDULED = "agenda_scheduled"
    AGENDA_CANCELLED = "agenda_cancelled"
    DEFERRED_SCHEDULED = "deferred_scheduled"
    DEFERRED_CANCELLED = "deferred_cancelled"
    CONFIG_UPDATED = "config_updated"
    ENABLED_CHANGED = "enabled_changed"
    CONNECTION = "connection"
    TICK_ERROR = "tick_error"


class EventLog:
    """
    Append-only JSONL event sink with listeners.

    Attributes:
        file_path: Target ``.jsonl`` file, or None to keep events in memory only.
        recent: The last ``keep_recent`` events, newest last.
    """

    def __init__(self, file_path: Optional[Path] = None, keep_recent: int = 200):
        self.file_path = Path(file_path) if file_path else None
        self.keep_recent = keep_recent
        self.recent: list[dict[str, Any]] = []
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unsubscribes it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def emit(self, event_type: EventType, at: Optional[datetime] = None, **payload: Any) -> dict[str, Any]:
        """Record one event and notify listeners.

        Returns:
            The event record as written.
        """
        record = {
            "at": (at or utc_now()).isoformat(),
            "type": EventType(event_type).value,
            "payload": payload,
        }
        self.recent.append(record)
        if len(self.recent) > self.keep_recent:
            del self.recent[: len(self.recent) - self.keep_recent]

        if self.file_path is not None:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            with self.file_path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")

        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception as e:
                logger.warning(f"Event listener failed on {record['type']}: {e}")
        return record

    def of_type(self, event_type: EventType) -> list[dict[str, Any]]:
        wanted = EventType(event_type).value
        return [e for e in self.recent if e["type"] == wanted]
