"""Core follow-up bot modules."""

from followup_bot.core.models import (
    AgendaEntry,
    BotConfig,
    BotStatus,
    ConnectionState,
    ContactRecord,
    ContactStage,
    DeferredStartJob,
    InboundMessage,
    IntentKind,
    SendIntent,
    SendOutcome,
)

__all__ = [
    "AgendaEntry",
    "BotConfig",
    "BotStatus",
    "ConnectionState",
    "ContactRecord",
    "ContactStage",
    "DeferredStartJob",
    "InboundMessage",
    "IntentKind",
    "SendIntent",
    "SendOutcome",
]
