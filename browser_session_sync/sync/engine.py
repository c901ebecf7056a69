"""
Synchronization engine.

Reconciles the local session cache with the remote store:
- Draining: push queued local mutations, in order
- Fetching: pull the full remote session set
- Merging: last-write-wins diff, applied to the cache and the queue
- Persisting: write the merged cache, stamp last_synced_at

Cycles run on a timer, on the offline -> online edge and on request.
A failed cycle is logged and reported in its SyncResult; it never raises
into whatever triggered it.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config import SyncConfig
from ..exceptions import (
    AuthenticationRequiredError,
    NetworkUnavailableError,
    RemoteSessionGoneError,
    ServerRejectedError,
)
from ..identity.provider import CredentialProvider
from ..local.cache import LocalSessionCache
from ..logging_utils import SyncLoggerAdapter
from ..protocol import SyncStatus, now_ms
from .connectivity import ConnectivityMonitor
from .merge import MergePlan, plan_merge
from .queue import OperationKind, PendingOperation, PendingOperationQueue
from .remote import RemoteSessionAPI

logger = logging.getLogger(__name__)


class SyncPhase(Enum):
    """Where the current cycle is."""

    IDLE = "idle"
    DRAINING = "draining"
    FETCHING = "fetching"
    MERGING = "merging"


@dataclass
class SyncState:
    """Process-wide sync flags. Not persisted.

    is_syncing is only ever set through acquire(), which releases it on
    every exit path.
    """

    is_offline: bool = False
    is_syncing: bool = False
    last_synced_at: int | None = None
    phase: SyncPhase = SyncPhase.IDLE
    syncing_since: int | None = None

    @asynccontextmanager
    async def acquire(self, now: int) -> AsyncIterator[bool]:
        """Claim the cycle slot.

        Yields:
            True if this caller owns the cycle, False if one is already running
        """
        if self.is_syncing:
            yield False
            return

        self.is_syncing = True
        self.syncing_since = now
        try:
            yield True
        finally:
            self.is_syncing = False
            self.syncing_since = None
            self.phase = SyncPhase.IDLE


@dataclass
class SyncResult:
    """Result of one sync cycle."""

    success: bool = False
    skipped: str | None = None
    pushed: int = 0
    inserted: int = 0
    overwritten: int = 0
    removed: int = 0
    enqueued: int = 0
    held_back: int = 0
    pending: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "pushed": self.pushed,
            "inserted": self.inserted,
            "overwritten": self.overwritten,
            "removed": self.removed,
            "enqueued": self.enqueued,
            "held_back": self.held_back,
            "pending": self.pending,
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
        }


class SyncEngine:
    """Reconciles a LocalSessionCache with a RemoteSessionAPI.

    Handles:
    - Draining the pending operation queue against the remote store
    - Writing server-assigned ids back into the cache
    - Last-write-wins merge of the full remote set
    - Periodic and reconnection-triggered cycles
    """

    def __init__(
        self,
        cache: LocalSessionCache,
        queue: PendingOperationQueue,
        api: RemoteSessionAPI,
        credentials: CredentialProvider,
        connectivity: ConnectivityMonitor | None = None,
        config: SyncConfig | None = None,
        state: SyncState | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the sync engine.

        Args:
            cache: Local session cache
            queue: Pending operation queue
            api: Remote session API
            credentials: Source of the bearer credential
            connectivity: Reachability monitor (a default always-online one if omitted)
            config: Sync configuration
            state: Shared sync state (created if omitted)
            clock: Source of epoch-millisecond timestamps
        """
        self.cache = cache
        self.queue = queue
        self.api = api
        self.credentials = credentials
        self.connectivity = connectivity or ConnectivityMonitor()
        self.config = config or SyncConfig()
        self.state = state or SyncState()
        self._clock = clock

        self.state.is_offline = not self.connectivity.is_online
        self._sync_task: asyncio.Task[None] | None = None
        # local_ids whose create was acknowledged while a fetch was in flight
        self._attached_during_fetch: set[str] | None = None
        self._background: set[asyncio.Task[SyncResult]] = set()
        self._started = False

    # =========================================================================
    # Lifecycle and triggers
    # =========================================================================

    async def start(self) -> None:
        """Load persisted state and listen for reconnection."""
        if self._started:
            return
        await self.cache.ensure_loaded()
        await self.queue.ensure_loaded()
        self.connectivity.subscribe(self._on_connectivity_change)
        self.state.is_offline = not self.connectivity.is_online
        self._started = True

    async def close(self) -> None:
        """Stop timers and wait out background cycles."""
        await self.stop_auto_sync()
        self.connectivity.unsubscribe(self._on_connectivity_change)
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
        self._started = False

    async def _on_connectivity_change(self, online: bool) -> None:
        self.state.is_offline = not online
        if online:
            await self.queue.reset_backoff()
            self.request_sync()

    def request_sync(self) -> asyncio.Task[SyncResult]:
        """Schedule a cycle in the background (e.g. after login)."""
        task = asyncio.create_task(self.sync_now())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_until_idle(self) -> None:
        """Wait for background cycles started by request_sync() to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def start_auto_sync(self) -> None:
        """Start the periodic sync loop."""
        if self._sync_task is not None:
            return

        async def sync_loop() -> None:
            while True:
                try:
                    await asyncio.sleep(self.config.sync_interval_s)
                    await self.sync_now()
                except asyncio.CancelledError:
                    break

        self._sync_task = asyncio.create_task(sync_loop())

    async def stop_auto_sync(self) -> None:
        """Stop the periodic sync loop."""
        if self._sync_task is not None:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None

    async def get_status(self) -> SyncStatus:
        """Get current sync status."""
        await self.queue.ensure_loaded()
        pending = len(self.queue)
        return SyncStatus(
            is_synced=pending == 0 and self.state.last_synced_at is not None,
            pending_operations=pending,
            last_synced_at=self.state.last_synced_at,
            is_offline=self.state.is_offline,
            is_syncing=self.state.is_syncing,
        )

    # =========================================================================
    # Cycle
    # =========================================================================

    async def sync_now(self) -> SyncResult:
        """Run one reconciliation cycle.

        Never raises: failures are logged and reported in the result.
        A call made while another cycle is running returns immediately
        with skipped set.
        """
        start = self._clock()
        result = SyncResult()

        async with self.state.acquire(start) as acquired:
            if not acquired:
                result.skipped = "sync already in progress"
                return result

            log = SyncLoggerAdapter(logger, {"cycle_id": uuid.uuid4().hex[:8]})
            try:
                async with asyncio.timeout(self.config.cycle_timeout_s):
                    await self._run_cycle(result, log)
            except TimeoutError:
                result.success = False
                result.errors.append(f"Sync cycle timed out after {self.config.cycle_timeout_s}s")
                log.error("Sync cycle timed out", extra={"phase": self.state.phase.value})
            except AuthenticationRequiredError as e:
                result.success = False
                result.errors.append(str(e))
                log.warning(f"Sync aborted, re-authentication required: {e}")
            except Exception as e:
                result.success = False
                result.errors.append(f"Sync failed: {e}")
                log.exception("Sync cycle failed", extra={"phase": self.state.phase.value})

        result.pending = len(self.queue)
        result.duration_ms = self._clock() - start
        return result

    async def _run_cycle(self, result: SyncResult, log: SyncLoggerAdapter) -> None:
        await self.cache.ensure_loaded()
        await self.queue.ensure_loaded()

        self.state.is_offline = not self.connectivity.is_online
        if self.state.is_offline:
            result.skipped = "offline"
            log.debug("Offline, skipping sync")
            return
        if not await self.credentials.is_authenticated():
            result.skipped = "not authenticated"
            log.debug("Not authenticated, skipping sync")
            return

        self.state.phase = SyncPhase.DRAINING
        result.pushed = await self.queue.drain(self._apply_operation)
        if self.state.is_offline:
            # A network failure while draining; the fetch would fail the same way.
            result.skipped = "offline"
            log.info(f"Remote store unreachable, {len(self.queue)} operations still pending")
            return
        if not self.queue.is_empty():
            log.bind(phase=SyncPhase.DRAINING.value).info(
                f"Drained {result.pushed} operations, {len(self.queue)} still pending"
            )

        self.state.phase = SyncPhase.FETCHING
        self._attached_during_fetch = set()
        try:
            remote_sessions = await self.api.list_sessions()
        except NetworkUnavailableError as e:
            self.state.is_offline = True
            result.skipped = "offline"
            log.info(f"Remote store unreachable, skipping fetch: {e}")
            return
        finally:
            attached_during_fetch = self._attached_during_fetch
            self._attached_during_fetch = None

        self.state.phase = SyncPhase.MERGING
        plan = plan_merge(
            self.cache.snapshot(),
            remote_sessions,
            pending_creates=self.queue.pending_create_ids(),
            pending_deletes=self.queue.pending_delete_remote_ids(),
            attached_during_fetch=attached_during_fetch,
        )
        await self._apply_plan(plan, result)

        self.state.last_synced_at = self._clock()
        result.success = True
        log.info(
            "Sync completed",
            extra={"sync_result": result.to_dict(), "remote_count": len(remote_sessions)},
        )

    async def _apply_plan(self, plan: MergePlan, result: SyncResult) -> None:
        """Apply a merge plan.

        Cache and queue changes are made in memory before the first await,
        so no local mutation can interleave with the plan's application.
        """
        now = self._clock()

        for local_id, remote in plan.overwrites:
            self.cache.apply_remote(local_id, remote, now)
            # Queued updates predate the winning remote version.
            self.queue.drop_for(local_id, [OperationKind.UPDATE])
        for remote in plan.inserts:
            self.cache.insert_remote(remote, now)
        for record in plan.removals:
            self.cache.discard(record.local_id)
            self.queue.drop_for(record.local_id)
        for local_id in plan.unchanged:
            self.cache.mark_synced(local_id, now)

        result.overwritten = len(plan.overwrites)
        result.inserted = len(plan.inserts)
        result.removed = len(plan.removals)
        result.held_back = len(plan.held_back)

        await self.cache.persist()
        await self.queue.persist()

        for record in plan.pushes:
            if await self._enqueue_current(record.local_id, OperationKind.UPDATE):
                result.enqueued += 1
        for record in plan.creates:
            if self.queue.has_pending_create(record.local_id):
                continue
            if await self._enqueue_current(record.local_id, OperationKind.CREATE):
                result.enqueued += 1

    async def _enqueue_current(self, local_id: str, kind: OperationKind) -> bool:
        # Snapshot the record as it is now, not as it was when the plan was made.
        record = self.cache.get_local(local_id)
        if record is None:
            return False
        queued = await self.queue.enqueue(
            PendingOperation(
                kind=kind,
                local_id=local_id,
                remote_id=record.remote_id,
                payload_snapshot=record.to_wire(),
            )
        )
        return queued is not None

    # =========================================================================
    # Pushing queued operations
    # =========================================================================

    async def push_pending(self) -> int:
        """Drain the queue without fetching or merging.

        Used right after a local mutation. Never raises.

        Returns:
            Number of operations applied
        """
        self.state.is_offline = not self.connectivity.is_online
        if self.state.is_offline:
            return 0
        try:
            if not await self.credentials.is_authenticated():
                return 0
            return await self.queue.drain(self._apply_operation)
        except AuthenticationRequiredError as e:
            logger.warning(f"Push skipped, re-authentication required: {e}")
            return 0
        except Exception:
            logger.exception("Push of pending operations failed")
            return 0

    def _resolve_remote_id(self, op: PendingOperation) -> str | None:
        if op.remote_id:
            return op.remote_id
        record = self.cache.get_local(op.local_id)
        return record.remote_id if record else None

    async def _apply_operation(self, op: PendingOperation) -> None:
        """Apply one queued operation remotely.

        Raises whatever the API raises for transient failures so the queue
        keeps the operation; a network failure also marks the engine
        offline for the rest of the cycle. Rejections and vanished targets
        are logged and count as applied.
        """
        try:
            if op.kind is OperationKind.CREATE:
                await self._apply_create(op)
            elif op.kind is OperationKind.UPDATE:
                await self._apply_update(op)
            else:
                await self._apply_delete(op)
        except NetworkUnavailableError:
            self.state.is_offline = True
            raise
        except ServerRejectedError as e:
            logger.warning(f"Dropping {op.kind.value} for {op.target_id}: {e}")
            if op.kind is not OperationKind.DELETE:
                await self._hold_back(op, str(e))

    async def _hold_back(self, op: PendingOperation, error: str) -> None:
        # Keyed to the refused version; any later local edit releases it.
        record = self.cache.get_local(op.local_id)
        if record is None:
            return
        version = (op.payload_snapshot or {}).get("modifiedAt", record.modified_at)
        self.cache.mark_rejected(op.local_id, version, error)
        await self.cache.persist()

    async def _apply_create(self, op: PendingOperation) -> None:
        body = op.payload_snapshot
        if body is None:
            record = self.cache.get_local(op.local_id)
            if record is None:
                logger.debug(f"Create for {op.local_id} is moot, record is gone")
                return
            body = record.to_wire()

        remote = await self.api.create_session(body)

        now = self._clock()
        self.cache.attach_remote_id(op.local_id, remote.id, now)
        self.cache.adopt_remote_version(op.local_id, remote, now)
        self.queue.bind_remote_id(op.local_id, remote.id)
        if self._attached_during_fetch is not None:
            self._attached_during_fetch.add(op.local_id)
        await self.cache.persist()
        logger.info(f"Created remote session {remote.id} for {op.local_id}")

    async def _apply_update(self, op: PendingOperation) -> None:
        remote_id = self._resolve_remote_id(op)
        if remote_id is None:
            logger.debug(f"Update for {op.local_id} is moot, no remote id")
            return
        if op.payload_snapshot is None:
            return

        try:
            remote = await self.api.update_session(remote_id, op.payload_snapshot)
        except RemoteSessionGoneError:
            # Remote deletion wins; the merge step removes the local copy.
            logger.info(f"Remote session {remote_id} was deleted, dropping update")
            return

        # The server's clock may disagree with ours; take its timestamp so
        # the next merge does not push the same content again.
        if self.cache.adopt_remote_version(op.local_id, remote, self._clock()):
            await self.cache.persist()

    async def _apply_delete(self, op: PendingOperation) -> None:
        remote_id = self._resolve_remote_id(op)
        if remote_id is None:
            logger.debug(f"Delete for {op.local_id} is moot, no remote id")
            return
        await self.api.delete_session(remote_id)
