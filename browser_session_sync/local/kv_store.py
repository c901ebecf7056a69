"""
Key-value storage backends.

The sync engine persists its state through a minimal async key-value
contract: get/set/remove of named JSON-compatible values, each call
atomic, no transactions across keys.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from ..exceptions import StorageIOError, ValidationError
from .file_ops import ensure_directory, quarantine_file, read_json, remove_file, write_json_atomic

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class KeyValueStore(ABC):
    """Durable async key-value store."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the value stored under key, or None if absent."""
        ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store value under key, replacing any previous value."""
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove key. Removing an absent key is not an error."""
        ...


class MemoryKeyValueStore(KeyValueStore):
    """In-process store. Values are deep-copied on the way in and out."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Any | None:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> dict[str, Any]:
        """Copy of everything stored (for inspection in tests and tooling)."""
        return copy.deepcopy(self._data)


class JsonFileKeyValueStore(KeyValueStore):
    """File-backed store: one JSON document per key under a base directory.

    Writes go through temp file + rename so each set() is atomic. A lock
    per key serializes concurrent writers within the process.

    A document that no longer parses is moved aside (see
    ``file_ops.quarantine_file``) and read as absent, unless
    ``quarantine_corrupt`` is False, in which case the error propagates.

    Layout:
        {base_dir}/{key}.json
    """

    def __init__(self, base_dir: Path | str, quarantine_corrupt: bool = True) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self.quarantine_corrupt = quarantine_corrupt
        self._locks: dict[str, asyncio.Lock] = {}

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValidationError("key", "must contain only letters, digits, '_', '.', '-'", key)
        return self.base_dir / f"{key}.json"

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def initialize(self) -> None:
        """Create the base directory."""
        await ensure_directory(self.base_dir)

    async def get(self, key: str) -> Any | None:
        path = self._path(key)
        async with self._lock(key):
            try:
                return await read_json(path)
            except StorageIOError as e:
                if e.operation != "parse_json" or not self.quarantine_corrupt:
                    raise
                moved = await quarantine_file(path)
                logger.warning(f"Unreadable value for {key!r} moved to {moved.name}")
                return None

    async def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        async with self._lock(key):
            await write_json_atomic(path, value)

    async def remove(self, key: str) -> None:
        path = self._path(key)
        async with self._lock(key):
            await remove_file(path)
