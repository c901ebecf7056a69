"""
Tests for the key-value storage backends and atomic JSON file helpers.
"""

import asyncio
import json
from datetime import datetime

import pytest

from browser_session_sync.exceptions import StorageIOError, ValidationError
from browser_session_sync.local.file_ops import (
    quarantine_file,
    read_json,
    remove_file,
    write_json_atomic,
)
from browser_session_sync.local.kv_store import JsonFileKeyValueStore, MemoryKeyValueStore


class TestFileOps:
    """Tests for atomic JSON file operations."""

    async def test_write_then_read(self, tmp_path):
        path = tmp_path / "value.json"
        await write_json_atomic(path, {"a": [1, 2, 3]})
        assert await read_json(path) == {"a": [1, 2, 3]}

    async def test_read_missing_returns_none(self, tmp_path):
        assert await read_json(tmp_path / "missing.json") is None

    async def test_read_empty_returns_none(self, tmp_path):
        path = tmp_path / "empty.json"
        path.write_text("")
        assert await read_json(path) is None

    async def test_read_corrupt_raises(self, tmp_path):
        path = tmp_path / "corrupt.json"
        path.write_text("{not json")
        with pytest.raises(StorageIOError) as exc_info:
            await read_json(path)
        assert exc_info.value.operation == "parse_json"

    async def test_write_creates_parent_dirs(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "value.json"
        await write_json_atomic(path, [1])
        assert json.loads(path.read_text()) == [1]

    async def test_write_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "value.json"
        await write_json_atomic(path, {"x": 1})
        await write_json_atomic(path, {"x": 2})
        assert [p.name for p in tmp_path.iterdir()] == ["value.json"]

    async def test_unserializable_value_raises_and_keeps_old_file(self, tmp_path):
        path = tmp_path / "value.json"
        await write_json_atomic(path, {"x": 1})

        with pytest.raises(StorageIOError):
            await write_json_atomic(path, {"x": object()})

        assert await read_json(path) == {"x": 1}
        assert [p.name for p in tmp_path.iterdir()] == ["value.json"]

    async def test_remove_file(self, tmp_path):
        path = tmp_path / "value.json"
        await write_json_atomic(path, 1)
        assert await remove_file(path) is True
        assert await remove_file(path) is False

    async def test_quarantine_file(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text("{bad")

        moved = await quarantine_file(path, now=datetime(2024, 5, 1, 12, 30, 0))

        assert moved == tmp_path / "sessions.20240501_123000.corrupt.json"
        assert moved.read_text() == "{bad"
        assert not path.exists()


class TestMemoryKeyValueStore:
    """Tests for the in-process store."""

    async def test_get_absent(self):
        assert await MemoryKeyValueStore().get("nope") is None

    async def test_values_are_copied(self):
        store = MemoryKeyValueStore()
        value = {"items": [1]}
        await store.set("k", value)
        value["items"].append(2)

        loaded = await store.get("k")
        assert loaded == {"items": [1]}
        loaded["items"].append(3)
        assert await store.get("k") == {"items": [1]}

    async def test_remove_absent_is_noop(self):
        store = MemoryKeyValueStore({"k": 1})
        await store.remove("k")
        await store.remove("k")
        assert store.snapshot() == {}


class TestJsonFileKeyValueStore:
    """Tests for the file-backed store."""

    @pytest.fixture
    async def store(self, tmp_path):
        store = JsonFileKeyValueStore(tmp_path / "kv")
        await store.initialize()
        return store

    async def test_initialize_creates_directory(self, store, tmp_path):
        assert (tmp_path / "kv").is_dir()

    async def test_set_get_remove(self, store, tmp_path):
        await store.set("sessions", [{"local_id": "L1"}])
        assert (tmp_path / "kv" / "sessions.json").exists()
        assert await store.get("sessions") == [{"local_id": "L1"}]

        await store.remove("sessions")
        assert await store.get("sessions") is None
        await store.remove("sessions")

    async def test_survives_new_instance(self, store, tmp_path):
        await store.set("authToken", "abc")
        reopened = JsonFileKeyValueStore(tmp_path / "kv")
        assert await reopened.get("authToken") == "abc"

    async def test_rejects_path_like_keys(self, store):
        with pytest.raises(ValidationError):
            await store.set("../escape", 1)
        with pytest.raises(ValidationError):
            await store.get("a/b")

    async def test_concurrent_writes_last_one_wins(self, store):
        await asyncio.gather(*(store.set("counter", i) for i in range(20)))
        assert await store.get("counter") == 19

    async def test_corrupt_value_is_moved_aside(self, store, tmp_path):
        (tmp_path / "kv" / "sessions.json").write_text("[{truncated")

        assert await store.get("sessions") is None

        names = [p.name for p in (tmp_path / "kv").iterdir()]
        assert "sessions.json" not in names
        assert len(names) == 1
        assert names[0].startswith("sessions.") and names[0].endswith(".corrupt.json")

        await store.set("sessions", [])
        assert await store.get("sessions") == []

    async def test_corrupt_value_raises_without_quarantine(self, tmp_path):
        store = JsonFileKeyValueStore(tmp_path, quarantine_corrupt=False)
        (tmp_path / "sessions.json").write_text("{")
        with pytest.raises(StorageIOError):
            await store.get("sessions")
        assert (tmp_path / "sessions.json").exists()
