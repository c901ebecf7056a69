"""
Synced session store.

Offline-first entry point for session records:
- Writes go to the local cache first and are durably persisted
- Each write is queued for the remote store
- When online and signed in, the queue is pushed right away
- Background cycles reconcile with the server
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from ..config import SyncConfig
from ..domain_utils import extract_domain, is_domain_blacklisted
from ..exceptions import ValidationError
from ..identity.provider import CredentialProvider, KeyValueCredentialProvider
from ..local.cache import LocalSessionCache, sorted_for_display
from ..local.kv_store import JsonFileKeyValueStore, KeyValueStore
from ..protocol import SessionRecord, SyncStatus, now_ms
from ..sync.connectivity import ConnectivityMonitor
from ..sync.engine import SyncEngine, SyncResult
from ..sync.queue import OperationKind, PendingOperation, PendingOperationQueue
from ..sync.remote import HttpRemoteSessionAPI, RemoteSessionAPI

logger = logging.getLogger(__name__)


class SyncedSessionStore:
    """Local session store kept in sync with the remote session API.

    Mutations never block on the network: they complete once the local
    cache and the pending queue are persisted. The immediate push that
    follows is best effort; whatever it cannot deliver stays queued.
    """

    def __init__(
        self,
        cache: LocalSessionCache,
        queue: PendingOperationQueue,
        engine: SyncEngine,
        config: SyncConfig | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize synced storage.

        Args:
            cache: Local session cache
            queue: Pending operation queue
            engine: Sync engine sharing the same cache and queue
            config: Sync configuration
            clock: Source of epoch-millisecond timestamps
        """
        self.cache = cache
        self.queue = queue
        self.engine = engine
        self.config = config or engine.config
        self._clock = clock

    @classmethod
    async def create(
        cls,
        config: SyncConfig | None = None,
        store: KeyValueStore | None = None,
        api: RemoteSessionAPI | None = None,
        credentials: CredentialProvider | None = None,
        connectivity: ConnectivityMonitor | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> SyncedSessionStore:
        """Create and initialize a SyncedSessionStore.

        Args:
            config: Sync configuration (default: from environment)
            store: Key-value store (default: JSON files under config.data_dir)
            api: Remote API (default: HTTP client for config.api_base_url)
            credentials: Credential provider (default: token saved in the store)
            connectivity: Reachability monitor
            clock: Source of epoch-millisecond timestamps

        Returns:
            Initialized SyncedSessionStore (background sync not started)
        """
        config = config or SyncConfig.from_environment()

        if store is None:
            file_store = JsonFileKeyValueStore(config.data_dir)
            await file_store.initialize()
            store = file_store

        credentials = credentials or KeyValueCredentialProvider(store)
        api = api or HttpRemoteSessionAPI(
            config.api_base_url, credentials, timeout_s=config.request_timeout_s
        )
        connectivity = connectivity or ConnectivityMonitor(
            check_host=config.check_host, timeout_s=config.connectivity_timeout_s
        )

        cache = LocalSessionCache(store, clock=clock)
        queue = PendingOperationQueue(store, retry_policy=config.retry_policy(), clock=clock)
        engine = SyncEngine(
            cache=cache,
            queue=queue,
            api=api,
            credentials=credentials,
            connectivity=connectivity,
            config=config,
            clock=clock,
        )
        await engine.start()
        return cls(cache, queue, engine, config, clock)

    async def start(self, auto_sync: bool = True) -> None:
        """Start background sync (timer and optional connectivity polling)."""
        await self.engine.start()
        if auto_sync:
            await self.engine.start_auto_sync()
        if self.config.connectivity_poll_interval_s > 0:
            await self.engine.connectivity.start_polling(self.config.connectivity_poll_interval_s)

    async def close(self) -> None:
        """Stop background work and close network resources."""
        await self.engine.connectivity.stop_polling()
        await self.engine.close()
        await self.engine.api.close()

    # =========================================================================
    # Session CRUD - write to local, queue, push when possible
    # =========================================================================

    async def create_session(
        self,
        domain: str,
        name: str,
        payload: dict[str, Any] | None = None,
        has_restricted_content: bool = False,
    ) -> SessionRecord:
        """Save a captured session.

        Args:
            domain: Site domain (a full URL is reduced to its hostname)
            name: User-facing label
            payload: Captured cookies/localStorage/sessionStorage
            has_restricted_content: Whether HttpOnly cookies were captured

        Raises:
            ValidationError: If domain/name is empty or the domain is blacklisted
        """
        domain = extract_domain(domain.strip()) if isinstance(domain, str) else domain
        if isinstance(domain, str) and is_domain_blacklisted(domain, self.config.blacklist):
            raise ValidationError("domain", "sessions are disabled for this domain", domain)

        record = await self.cache.create(
            {
                "domain": domain,
                "name": name,
                "payload": payload or {},
                "has_restricted_content": has_restricted_content,
            }
        )
        await self.queue.enqueue(
            PendingOperation(
                kind=OperationKind.CREATE,
                local_id=record.local_id,
                payload_snapshot=record.to_wire(),
            )
        )
        await self.engine.push_pending()
        return await self._current(record)

    async def update_session(self, session_id: str, **fields: Any) -> SessionRecord:
        """Change mutable fields of a session.

        Args:
            session_id: local_id or remote_id
            **fields: name, domain, payload, has_restricted_content, last_used

        Raises:
            SessionNotFoundError: If the session does not exist locally
            ValidationError: If a field is unknown or invalid
        """
        record = await self.cache.update(session_id, fields)
        await self._enqueue_change(record)
        await self.engine.push_pending()
        return await self._current(record)

    async def mark_used(self, session_id: str) -> SessionRecord:
        """Stamp a session as just restored.

        Raises:
            SessionNotFoundError: If the session does not exist locally
        """
        return await self.update_session(session_id, last_used=self._clock())

    async def delete_session(self, session_id: str) -> SessionRecord:
        """Delete a session locally and remotely.

        Not idempotent: a second call for the same session raises.

        Returns:
            The removed record

        Raises:
            SessionNotFoundError: If the session does not exist locally
        """
        record = await self.cache.delete(session_id)
        await self.queue.enqueue(
            PendingOperation(
                kind=OperationKind.DELETE,
                local_id=record.local_id,
                remote_id=record.remote_id,
            )
        )
        await self.engine.push_pending()
        return record

    async def _enqueue_change(self, record: SessionRecord) -> None:
        if record.remote_id is None and not self.queue.has_pending_create(record.local_id):
            # Never reached the server and its create was lost: create instead.
            kind = OperationKind.CREATE
        else:
            kind = OperationKind.UPDATE
        await self.queue.enqueue(
            PendingOperation(
                kind=kind,
                local_id=record.local_id,
                remote_id=record.remote_id,
                payload_snapshot=record.to_wire(),
            )
        )

    async def _current(self, record: SessionRecord) -> SessionRecord:
        # The push may have attached a remote id in the meantime.
        return await self.cache.get(record.local_id) or record

    # =========================================================================
    # Reads - always local
    # =========================================================================

    async def get_session(self, session_id: str) -> SessionRecord | None:
        return await self.cache.get(session_id)

    async def list_sessions(self) -> list[SessionRecord]:
        """All sessions, most recently modified first."""
        return sorted_for_display(await self.cache.list())

    async def list_sessions_by_domain(self, domain: str) -> list[SessionRecord]:
        """Sessions for one domain, most recently modified first."""
        return sorted_for_display(await self.cache.list_by_domain(extract_domain(domain)))

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync_now(self) -> SyncResult:
        return await self.engine.sync_now()

    async def get_status(self) -> SyncStatus:
        return await self.engine.get_status()
