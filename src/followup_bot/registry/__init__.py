"""Contact registry."""

from followup_bot.registry.contact_store import ContactStore

__all__ = [
    "ContactStore",
]
