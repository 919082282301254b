"""
Contact Store - Engagement state for every tracked contact.

Holds one :class:`ContactRecord` per channel handle plus the blocked registry,
and persists both through a :class:`KeyValueStore`. Records are created
lazily on first reference and never hard-deleted; removing a contact from the
funnel clears its scheduling fields but keeps its history.

The blocked registry is keyed by phone key and kept separately from the
records, so a block survives the record being edited or re-created.

Usage:
    from followup_bot.database import JsonFileStore
    from followup_bot.registry import ContactStore

    contacts = ContactStore(JsonFileStore(Path("data/v1")))
    contacts.load()
    record = contacts.get_or_create("5511999998888@s.whatsapp.net", now)
    record.notes = "prefers afternoon"
    contacts.save()
"""
import logging
from datetime import datetime
from typing import Optional

from pydantic import ValidationError

from followup_bot.core.models import ContactRecord, ContactStage, ensure_utc
from followup_bot.database.kv_store import KeyValueStore
from followup_bot.messaging.handles import handle_to_phone_key

logger = logging.getLogger(__name__)

CONTACTS_KEY = "contacts"
BLOCKED_KEY = "blocked"


class ContactStore:
    """
    In-memory contact registry backed by a key-value store.

    All reads and writes of records happen on the event loop thread; callers
    mutate the returned record in place and call :meth:`save` afterwards.

    Attributes:
        store: Persistence backend.
        blocked: Phone key -> ``{"at", "reason", "handle"}``.
    """

    def __init__(self, store: KeyValueStore):
        """
        Initialize an empty store.

        Args:
            store: Backend the records and blocked registry are persisted to.
        """
        self.store = store
        self._records: dict[str, ContactRecord] = {}
        self.blocked: dict[str, dict] = {}

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def load(self) -> int:
        """
        Load records and the blocked registry from the backend.

        Records that fail validation are logged and skipped.

        Returns:
            Number of records loaded.

        Raises:
            StoreError: If the backend cannot be read.
        """
        raw_records = self.store.load(CONTACTS_KEY, {}) or {}
        self._records = {}
        for handle, raw in raw_records.items():
            try:
                record = ContactRecord.model_validate({"handle": handle, **raw})
            except ValidationError as e:
                logger.warning(f"Skipping invalid contact record {handle!r}: {e}")
                continue
            self._records[record.handle] = record

        self.blocked = dict(self.store.load(BLOCKED_KEY, {}) or {})
        logger.info(f"Loaded {len(self._records)} contacts ({len(self.blocked)} blocked)")
        return len(self._records)

    def save(self) -> None:
        """Persist every record and the blocked registry."""
        self.store.save(
            CONTACTS_KEY,
            {
                handle: record.model_dump(by_alias=True, mode="json")
                for handle, record in self._records.items()
            },
        )
        self.store.save(BLOCKED_KEY, self.blocked)

    # =========================================================================
    # LOOKUP
    # =========================================================================

    def get(self, handle: str) -> Optional[ContactRecord]:
        """Record for ``handle``, or None if never referenced."""
        return self._records.get(handle)

    def get_or_create(self, handle: str, now: datetime) -> ContactRecord:
        """
        Record for ``handle``, creating a fresh one on first reference.

        A handle present in the blocked registry comes back blocked.

        Args:
            handle: Channel destination handle.
            now: Creation timestamp.

        Returns:
            The existing or newly created record.
        """
        record = self._records.get(handle)
        if record is not None:
            return record

        now = ensure_utc(now)
        phone_key = handle_to_phone_key(handle)
        record = ContactRecord(
            handle=handle,
            phone_key=phone_key,
            created_at=now,
            updated_at=now,
        )
        entry = self.blocked.get(phone_key)
        if entry:
            record.blocked = True
            record.blocked_reason = entry.get("reason")
            record.stage = ContactStage.LOST.value
        self._records[record.handle] = record
        logger.debug(f"Created contact record for {handle}")
        return record

    def all(self) -> list[ContactRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    # =========================================================================
    # BLOCKED REGISTRY
    # =========================================================================

    def is_blocked(self, handle: str) -> bool:
        """Blocked either on the record or in the registry."""
        record = self._records.get(handle)
        if record is not None and record.blocked:
            return True
        return handle_to_phone_key(handle) in self.blocked

    def mark_blocked(self, record: ContactRecord, reason: str, now: datetime) -> None:
        """
        Permanently exclude a contact from automatic and manual sends.

        Args:
            record: Contact to block (mutated in place).
            reason: Free-text reason shown in the panel.
            now: Block timestamp.
        """
        record.blocked = True
        record.blocked_reason = reason
        record.stage = ContactStage.LOST.value
        record.next_eligible_at = None
        record.touch(now)
        self.blocked[record.phone_key or handle_to_phone_key(record.handle)] = {
            "at": ensure_utc(now).isoformat(),
            "reason": reason,
            "handle": record.handle,
        }

    def unblock(self, record: ContactRecord, now: datetime) -> None:
        """Lift a block. The contact stays out of the funnel until re-scheduled."""
        record.blocked = False
        record.blocked_reason = None
        record.touch(now)
        self.blocked.pop(record.phone_key or handle_to_phone_key(record.handle), None)

    # =========================================================================
    # AGGREGATES
    # =========================================================================

    def count_by_stage(self) -> dict[str, int]:
        """Number of contacts per stage, every stage present."""
        counts = {stage.value: 0 for stage in ContactStage}
        for record in self._records.values():
            stage = ContactStage(record.stage).value
            counts[stage] = counts.get(stage, 0) + 1
        return counts
