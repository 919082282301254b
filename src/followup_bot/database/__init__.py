"""Persistence backends for bot state."""

from followup_bot.database.kv_store import (
    InMemoryStore,
    JsonFileStore,
    KeyValueStore,
    StoreError,
)

__all__ = [
    "InMemoryStore",
    "JsonFileStore",
    "KeyValueStore",
    "StoreError",
]
