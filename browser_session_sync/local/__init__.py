"""
Local session storage.

Provides the device-local side of sync: an async key-value contract
with memory and JSON-file backends, and the session cache built on it.
File writes are atomic (temp file + fsync + rename).

Key classes:
- LocalSessionCache: local_id -> SessionRecord map, persisted under one key
- JsonFileKeyValueStore: one JSON document per key on disk
- MemoryKeyValueStore: in-process store for tests and embedding
"""

from .cache import SESSIONS_KEY, LocalSessionCache, sorted_for_display
from .file_ops import quarantine_file, read_json, remove_file, write_json_atomic
from .kv_store import JsonFileKeyValueStore, KeyValueStore, MemoryKeyValueStore

__all__ = [
    # Session cache
    "LocalSessionCache",
    "SESSIONS_KEY",
    "sorted_for_display",
    # Key-value stores
    "KeyValueStore",
    "MemoryKeyValueStore",
    "JsonFileKeyValueStore",
    # Low-level file operations
    "read_json",
    "quarantine_file",
    "write_json_atomic",
    "remove_file",
]
