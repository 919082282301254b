"""
Key-value persistence for bot state.

Each bot instance keeps its state under its own directory, one JSON file per
key (``contacts.json``, ``agendas.json``, ``counters.json`` ...). Values are
plain JSON-compatible structures; model validation happens in the layers
above this one.
"""
import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Persistence layer could not read or write a key."""


class KeyValueStore(Protocol):
    """Load/save contract consumed by the scheduler."""

    def load(self, key: str, default: Any) -> Any: ...

    def save(self, key: str, value: Any) -> None: ...


class JsonFileStore:
    """JSON-file backed key-value store.

    Missing or empty files resolve to the supplied default. A file that
    exists but cannot be parsed is an infrastructure fault and raises
    :class:`StoreError`.

    Writes go to a temporary sibling first and are moved into place with
    :func:`os.replace`, so a crash mid-write leaves the previous version.

    Attributes:
        base_dir: Directory holding this bot's JSON files.
    """

    def __init__(self, base_dir: Path) -> None:
        """Create the store, making ``base_dir`` if needed.

        Args:
            base_dir: Per-bot data directory (e.g. ``data/v1``).
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise ValueError(f"Invalid store key: {key!r}")
        return self.base_dir / f"{key}.json"

    def load(self, key: str, default: Any) -> Any:
        """Load the value stored under ``key``.

        Args:
            key: Store key (file stem).
            default: Value returned when nothing is stored yet.

        Returns:
            The decoded JSON value, or ``default``.

        Raises:
            StoreError: If the file exists but is unreadable or not valid JSON.
        """
        path = self._path(key)
        if not path.exists():
            return default
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StoreError(f"Cannot read {path}: {e}") from e
        if not raw.strip():
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupt JSON in {path}: {e}") from e

    def save(self, key: str, value: Any) -> None:
        """Persist ``value`` under ``key``.

        Raises:
            StoreError: If the file cannot be written.
        """
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(
                json.dumps(value, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"Cannot write {path}: {e}") from e
        logger.debug(f"Saved {key} to {path}")

    def __repr__(self) -> str:
        return f"JsonFileStore(base_dir={str(self.base_dir)!r})"


class InMemoryStore:
    """Process-local store used for dry runs and tests.

    Values are deep-copied on the way in and out; callers never share
    stored state.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial or {})
        self.save_count = 0

    def load(self, key: str, default: Any) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def save(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)
        self.save_count += 1

    def keys(self) -> list[str]:
        return sorted(self._data)
