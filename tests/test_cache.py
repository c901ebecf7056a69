"""
Tests for LocalSessionCache.

Verifies local CRUD semantics (id assignment, modified_at bumps,
not-found and validation errors) and the in-memory primitives the sync
engine uses.
"""

import itertools

import pytest

from browser_session_sync.exceptions import SessionNotFoundError, ValidationError
from browser_session_sync.local.cache import SESSIONS_KEY, LocalSessionCache, sorted_for_display
from browser_session_sync.local.kv_store import MemoryKeyValueStore
from browser_session_sync.protocol import RemoteSession, SessionRecord


def make_cache(store, clock):
    ids = itertools.count(1)
    return LocalSessionCache(store, clock=clock, id_factory=lambda: f"L{next(ids)}")


class TestCreate:
    """Tests for create()."""

    async def test_assigns_id_and_timestamps(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        record = await cache.create({"domain": "example.com", "name": "work"})

        assert record.local_id == "L1"
        assert record.remote_id is None
        assert record.modified_at == clock.now
        assert record.created_at == clock.now
        assert record.last_used == clock.now
        assert record.last_synced_at is None

    async def test_ignores_caller_identity(self, kv_store, clock):
        """A record passed in gets a fresh local_id and modified_at."""
        cache = make_cache(kv_store, clock)
        given = SessionRecord(
            local_id="mine", domain="example.com", name="n", modified_at=1, remote_id="R9"
        )
        record = await cache.create(given)

        assert record.local_id == "L1"
        assert record.modified_at == clock.now
        assert record.remote_id is None

    async def test_persists_before_returning(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        await cache.create({"domain": "example.com", "name": "n", "payload": {"cookies": []}})

        stored = kv_store.snapshot()[SESSIONS_KEY]
        assert len(stored) == 1
        assert stored[0]["payload"] == {"cookies": []}

    @pytest.mark.parametrize(
        "fields",
        [
            {"domain": "", "name": "n"},
            {"domain": "example.com", "name": "   "},
            {"name": "n"},
            {"domain": "example.com", "name": "n", "payload": ["not", "a", "dict"]},
            {"domain": "example.com", "name": "n", "owner": "someone"},
        ],
    )
    async def test_invalid_fields_rejected(self, kv_store, clock, fields):
        cache = make_cache(kv_store, clock)
        with pytest.raises(ValidationError):
            await cache.create(fields)
        assert len(cache) == 0


class TestUpdate:
    """Tests for update()."""

    async def test_merges_fields_and_bumps_modified_at(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        created = await cache.create({"domain": "example.com", "name": "old"})
        clock.advance(500)

        updated = await cache.update(created.local_id, {"name": "new"})

        assert updated.name == "new"
        assert updated.domain == "example.com"
        assert updated.modified_at == created.modified_at + 500

    async def test_modified_at_never_goes_backwards(self, kv_store, clock):
        """A clock that jumps back still leaves modified_at where it was."""
        cache = make_cache(kv_store, clock)
        created = await cache.create({"domain": "example.com", "name": "n"})
        clock.now -= 10_000

        updated = await cache.update(created.local_id, {"name": "m"})
        assert updated.modified_at == created.modified_at

    async def test_lookup_by_remote_id(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        created = await cache.create({"domain": "example.com", "name": "n"})
        cache.attach_remote_id(created.local_id, "R1", clock.now)

        updated = await cache.update("R1", {"name": "via remote id"})
        assert updated.local_id == created.local_id
        assert updated.name == "via remote id"

    async def test_missing_raises_not_found(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        with pytest.raises(SessionNotFoundError):
            await cache.update("nope", {"name": "x"})

    async def test_unknown_field_rejected(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        created = await cache.create({"domain": "example.com", "name": "n"})
        with pytest.raises(ValidationError):
            await cache.update(created.local_id, {"local_id": "hijack"})


class TestDelete:
    """Tests for delete()."""

    async def test_returns_removed_record(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        created = await cache.create({"domain": "example.com", "name": "n"})

        removed = await cache.delete(created.local_id)
        assert removed.local_id == created.local_id
        assert await cache.get(created.local_id) is None
        assert kv_store.snapshot()[SESSIONS_KEY] == []

    async def test_second_delete_raises(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        created = await cache.create({"domain": "example.com", "name": "n"})
        await cache.delete(created.local_id)

        with pytest.raises(SessionNotFoundError):
            await cache.delete(created.local_id)


class TestReads:
    """Tests for get/list."""

    async def test_returned_records_are_copies(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        created = await cache.create({"domain": "example.com", "name": "n"})

        fetched = await cache.get(created.local_id)
        fetched.name = "mutated"
        assert (await cache.get(created.local_id)).name == "n"

    async def test_list_by_domain(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        await cache.create({"domain": "a.com", "name": "1"})
        await cache.create({"domain": "b.com", "name": "2"})
        await cache.create({"domain": "a.com", "name": "3"})

        names = sorted(r.name for r in await cache.list_by_domain("a.com"))
        assert names == ["1", "3"]

    async def test_sorted_for_display(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        await cache.create({"domain": "a.com", "name": "older"})
        clock.advance()
        await cache.create({"domain": "a.com", "name": "newer"})

        assert [r.name for r in sorted_for_display(await cache.list())] == ["newer", "older"]


class TestLoading:
    """Tests for loading persisted state."""

    async def test_reload_from_store(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        created = await cache.create({"domain": "example.com", "name": "n"})

        reloaded = LocalSessionCache(kv_store, clock=clock)
        assert await reloaded.get(created.local_id) == created

    async def test_skips_unreadable_and_duplicate_records(self, clock):
        store = MemoryKeyValueStore(
            {
                SESSIONS_KEY: [
                    {"local_id": "L1", "domain": "a.com", "name": "ok", "remote_id": "R1"},
                    {"domain": "a.com"},
                    {"local_id": "L2", "domain": "a.com", "name": "dup", "remote_id": "R1"},
                    {"local_id": "L3", "domain": "a.com", "name": "bad", "modified_at": "soon"},
                ]
            }
        )
        cache = LocalSessionCache(store, clock=clock)

        records = await cache.list()
        assert [r.local_id for r in records] == ["L1"]


class TestEnginePrimitives:
    """Tests for the in-memory operations used by the sync engine."""

    async def test_attach_remote_id_drops_duplicate_holder(self, kv_store, clock):
        """A fetched copy of the same remote record is folded into the creator."""
        cache = make_cache(kv_store, clock)
        created = await cache.create({"domain": "a.com", "name": "n"})
        cache.insert_remote(
            RemoteSession(id="R1", modified_at=clock.now, domain="a.com", name="n"), clock.now
        )
        assert len(cache) == 2

        attached = cache.attach_remote_id(created.local_id, "R1", clock.now)

        assert attached.remote_id == "R1"
        assert len(cache) == 1
        assert cache.find_by_remote_id("R1").local_id == created.local_id

    async def test_attach_remote_id_to_deleted_record(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        assert cache.attach_remote_id("gone", "R1") is None

    async def test_apply_remote_keeps_local_id(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        created = await cache.create({"domain": "a.com", "name": "local"})
        remote = RemoteSession(
            id="R1", modified_at=clock.now + 5, domain="a.com", name="remote", payload={"x": 1}
        )

        applied = cache.apply_remote(created.local_id, remote, clock.now)

        assert applied.local_id == created.local_id
        assert applied.remote_id == "R1"
        assert applied.name == "remote"
        assert applied.payload == {"x": 1}
        assert applied.created_at == created.created_at

    async def test_insert_remote_is_idempotent_per_remote_id(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        remote = RemoteSession(id="R1", modified_at=1, domain="a.com", name="n")

        first = cache.insert_remote(remote, clock.now)
        second = cache.insert_remote(remote, clock.now)

        assert first.local_id == second.local_id
        assert len(cache) == 1

    async def test_mark_synced_and_discard(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        created = await cache.create({"domain": "a.com", "name": "n"})

        cache.mark_synced(created.local_id, 123)
        assert cache.get_local(created.local_id).last_synced_at == 123

        assert cache.discard(created.local_id) is not None
        assert cache.discard(created.local_id) is None

    async def test_rejection_held_until_local_edit(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        created = await cache.create({"domain": "a.com", "name": "n"})

        cache.mark_rejected(created.local_id, created.modified_at, "Server rejected (422)")
        held = cache.get_local(created.local_id)
        assert held.is_held_back
        assert held.sync_error == "Server rejected (422)"

        await cache.persist()
        reloaded = make_cache(kv_store, clock)
        assert (await reloaded.get(created.local_id)).is_held_back

        edited = await cache.update(created.local_id, {"name": "fixed"})
        assert not edited.is_held_back
        assert edited.rejected_version is None
        assert edited.sync_error is None

    async def test_adopt_remote_version(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        created = await cache.create({"domain": "a.com", "name": "n"})
        cache.attach_remote_id(created.local_id, "R1", clock.now)
        acked = RemoteSession.from_wire({**created.to_wire(), "id": "R1", "modifiedAt": 42})

        assert cache.adopt_remote_version(created.local_id, acked, 77)
        record = cache.get_local(created.local_id)
        assert record.modified_at == 42
        assert record.last_synced_at == 77

    async def test_adopt_remote_version_skips_edited_record(self, kv_store, clock):
        cache = make_cache(kv_store, clock)
        created = await cache.create({"domain": "a.com", "name": "n"})
        acked = RemoteSession.from_wire({**created.to_wire(), "id": "R1", "modifiedAt": 42})
        await cache.update(created.local_id, {"name": "edited"})

        assert not cache.adopt_remote_version(created.local_id, acked, 77)
        assert cache.get_local(created.local_id).modified_at == clock.now
        assert not cache.adopt_remote_version("gone", acked, 77)
