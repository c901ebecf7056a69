"""
Shared test configuration and fixtures.

Provides a controllable clock, an in-memory remote session API that
behaves like the real server (assigns ids, stamps modifiedAt, 404s on
missing records) and ready-wired cache/queue/engine fixtures.
"""

import copy
import itertools
import logging
from typing import Any

import pytest

from browser_session_sync.config import SyncConfig
from browser_session_sync.exceptions import (
    AuthenticationRequiredError,
    NetworkUnavailableError,
    RemoteServerError,
    RemoteSessionGoneError,
    ServerRejectedError,
)
from browser_session_sync.identity.provider import StaticCredentialProvider
from browser_session_sync.local.cache import LocalSessionCache
from browser_session_sync.local.kv_store import MemoryKeyValueStore
from browser_session_sync.protocol import RemoteSession
from browser_session_sync.sync.connectivity import ConnectivityMonitor
from browser_session_sync.sync.engine import SyncEngine
from browser_session_sync.sync.queue import PendingOperationQueue, RetryPolicy
from browser_session_sync.sync.remote import RemoteSessionAPI

logger = logging.getLogger(__name__)

START_MS = 1_700_000_000_000


class FakeClock:
    """Deterministic epoch-millisecond clock.

    Each read returns the current value; advance() moves time forward.
    """

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1000) -> int:
        self.now += ms
        return self.now


class InMemoryRemoteSessionAPI(RemoteSessionAPI):
    """
    Fake remote store for engine tests.

    Assigns sequential ids (R1, R2, ...) and stamps modifiedAt from the
    shared clock. Failure switches make the next calls raise the same
    exceptions the HTTP client raises.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.records: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str | None]] = []
        self._ids = itertools.count(1)
        self._used_ids: set[str] = set()

        self.offline = False
        self.unauthorized = False
        self.reject_status: int | None = None
        self.server_error = False
        self.before_call = None

    # Test helpers

    def seed(self, remote_id: str, modified_at: int, **fields: Any) -> RemoteSession:
        body = {
            "id": remote_id,
            "domain": fields.pop("domain", "example.com"),
            "name": fields.pop("name", remote_id),
            "hasRestrictedContent": fields.pop("has_restricted_content", False),
            "lastUsed": fields.pop("last_used", modified_at),
            "modifiedAt": modified_at,
        }
        body.update(fields.pop("payload", {}))
        self.records[remote_id] = body
        self._used_ids.add(remote_id)
        return RemoteSession.from_wire(body)

    def call_kinds(self) -> list[str]:
        return [kind for kind, _ in self.calls]

    async def _check(self, kind: str, target: str | None) -> None:
        self.calls.append((kind, target))
        if self.before_call is not None:
            await self.before_call(kind, target)
        if self.offline:
            raise NetworkUnavailableError("memory://sessions", ConnectionError("offline"))
        if self.unauthorized:
            raise AuthenticationRequiredError("memory://sessions", "token expired")
        if self.server_error:
            raise RemoteServerError("memory://sessions", 503)
        if self.reject_status is not None:
            raise ServerRejectedError("memory://sessions", self.reject_status, "rejected")

    # RemoteSessionAPI

    async def create_session(self, body: dict[str, Any]) -> RemoteSession:
        await self._check("create", None)
        remote_id = f"R{next(self._ids)}"
        while remote_id in self._used_ids:
            remote_id = f"R{next(self._ids)}"
        self._used_ids.add(remote_id)
        stored = copy.deepcopy(body)
        stored["id"] = remote_id
        stored["modifiedAt"] = self.clock()
        self.records[remote_id] = stored
        return RemoteSession.from_wire(stored)

    async def update_session(self, remote_id: str, body: dict[str, Any]) -> RemoteSession:
        await self._check("update", remote_id)
        if remote_id not in self.records:
            raise RemoteSessionGoneError(remote_id)
        stored = copy.deepcopy(body)
        stored["id"] = remote_id
        stored["modifiedAt"] = self.clock()
        self.records[remote_id] = stored
        return RemoteSession.from_wire(stored)

    async def delete_session(self, remote_id: str) -> None:
        await self._check("delete", remote_id)
        self.records.pop(remote_id, None)

    async def list_sessions(self) -> list[RemoteSession]:
        await self._check("list", None)
        return [RemoteSession.from_wire(copy.deepcopy(r)) for r in self.records.values()]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv_store():
    return MemoryKeyValueStore()


@pytest.fixture
def remote(clock):
    return InMemoryRemoteSessionAPI(clock)


@pytest.fixture
def credentials():
    return StaticCredentialProvider("test-token")


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(initially_online=True)


@pytest.fixture
def sync_config(tmp_path):
    return SyncConfig(data_dir=tmp_path, max_attempts=3, initial_backoff_ms=1000)


@pytest.fixture
def cache(kv_store, clock):
    return LocalSessionCache(kv_store, clock=clock)


@pytest.fixture
def queue(kv_store, clock):
    return PendingOperationQueue(
        kv_store, retry_policy=RetryPolicy(max_attempts=3, initial_backoff_ms=1000), clock=clock
    )


@pytest.fixture
async def engine(cache, queue, remote, credentials, connectivity, sync_config, clock):
    """Started engine over in-memory collaborators."""
    engine = SyncEngine(
        cache=cache,
        queue=queue,
        api=remote,
        credentials=credentials,
        connectivity=connectivity,
        config=sync_config,
        clock=clock,
    )
    await engine.start()
    yield engine
    await engine.close()
