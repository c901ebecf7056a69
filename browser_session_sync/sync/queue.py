"""
Pending operation queue.

Durable, ordered log of local mutations that the remote store has not
acknowledged yet. Operations against the same record are coalesced into
the minimal equivalent set and drained strictly in enqueue order.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..exceptions import AuthenticationRequiredError
from ..local.kv_store import KeyValueStore
from ..protocol import now_ms

logger = logging.getLogger(__name__)

QUEUE_KEY = "pendingOperations"


class OperationKind(Enum):
    """Type of mutation waiting to be applied remotely."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class RetryPolicy:
    """Exponential backoff with a bounded attempt budget.

    Retryable failures (network errors, 5xx responses) back off but are
    retried without limit; any other failure drops the operation once
    max_attempts is reached.
    """

    max_attempts: int = 5
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 60000
    backoff_multiplier: float = 2.0

    def backoff_ms(self, attempts: int) -> int:
        """Delay before the next attempt after `attempts` failures."""
        if attempts <= 0:
            return 0
        delay = self.initial_backoff_ms * (self.backoff_multiplier ** (attempts - 1))
        return int(min(delay, self.max_backoff_ms))


@dataclass
class PendingOperation:
    """A queued mutation destined for the remote store.

    Attributes:
        kind: create, update or delete
        local_id: Local identifier of the affected record
        remote_id: Server identifier, once known
        payload_snapshot: Record state at enqueue time (create/update)
        enqueued_at: When the operation was queued (epoch ms)
        op_id: Unique identifier for this queue entry
        attempts: Number of failed apply attempts
        next_attempt_at: Earliest time the next attempt may run (epoch ms)
        last_error: Message of the last failure
    """

    kind: OperationKind
    local_id: str
    remote_id: str | None = None
    payload_snapshot: dict[str, Any] | None = None
    enqueued_at: int = 0
    op_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempts: int = 0
    next_attempt_at: int | None = None
    last_error: str | None = None

    @property
    def target_id(self) -> str:
        """remote_id for update/delete once known, otherwise the local_id.

        An update or delete without a remote_id is a forward reference to
        the pending create of the same local record.
        """
        if self.kind is not OperationKind.CREATE and self.remote_id:
            return self.remote_id
        return self.local_id

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "op_id": self.op_id,
            "kind": self.kind.value,
            "local_id": self.local_id,
            "remote_id": self.remote_id,
            "payload_snapshot": self.payload_snapshot,
            "enqueued_at": self.enqueued_at,
            "attempts": self.attempts,
            "next_attempt_at": self.next_attempt_at,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingOperation:
        """Create from dictionary."""
        return cls(
            op_id=data.get("op_id") or str(uuid.uuid4()),
            kind=OperationKind(data["kind"]),
            local_id=data["local_id"],
            remote_id=data.get("remote_id"),
            payload_snapshot=data.get("payload_snapshot"),
            enqueued_at=int(data.get("enqueued_at", 0)),
            attempts=int(data.get("attempts", 0)),
            next_attempt_at=data.get("next_attempt_at"),
            last_error=data.get("last_error"),
        )


ApplyFn = Callable[[PendingOperation], Awaitable[Any]]


class PendingOperationQueue:
    """Durable ordered queue of pending remote mutations.

    The whole queue is persisted under one key after every change. Only
    one drain runs at a time; the operation being applied is "in flight"
    and is never coalesced into, so edits made while it is on the wire
    are queued behind it instead of being lost.
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str = QUEUE_KEY,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the queue.

        Args:
            store: Durable key-value store
            key: Key the queue is persisted under
            retry_policy: Backoff and attempt budget for failed operations
            clock: Source of epoch-millisecond timestamps
        """
        self.store = store
        self.key = key
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._operations: list[PendingOperation] = []
        self._loaded = False
        self._draining = False
        self._in_flight: str | None = None

    async def ensure_loaded(self) -> None:
        """Load operations from the store if not already loaded."""
        if self._loaded:
            return

        raw = await self.store.get(self.key)
        operations: list[PendingOperation] = []
        try:
            for item in raw or []:
                operations.append(PendingOperation.from_dict(item))
        except (KeyError, TypeError, ValueError) as e:
            # If queue is corrupted, start fresh; the merge step re-enqueues
            # creates for any record that never reached the server.
            logger.warning(f"Pending operation queue unreadable, starting fresh: {e}")
            operations = []

        self._operations = operations
        self._loaded = True

    async def persist(self) -> None:
        """Write the queue to the store."""
        await self.store.set(self.key, [op.to_dict() for op in self._operations])

    # =========================================================================
    # Enqueue with coalescing
    # =========================================================================

    async def enqueue(self, operation: PendingOperation) -> PendingOperation | None:
        """Append an operation, coalescing with queued ones for the same record.

        - create: replaces the snapshot of an existing pending create
        - update: replaces the snapshot of a pending create/update; dropped
          if a delete is already pending
        - delete: removes pending create/update; if a create that never
          reached the server was pending, both cancel out

        Returns:
            The queued operation carrying the change, or None if nothing
            needs to reach the server
        """
        await self.ensure_loaded()

        if not operation.enqueued_at:
            operation.enqueued_at = self._clock()

        in_flight = self._in_flight_for(operation.local_id)
        queued = [
            op
            for op in self._operations
            if op.local_id == operation.local_id and op.op_id != self._in_flight
        ]

        if operation.kind is OperationKind.CREATE:
            result = self._enqueue_create(operation, queued)
        elif operation.kind is OperationKind.UPDATE:
            result = self._enqueue_update(operation, queued, in_flight)
        else:
            result = self._enqueue_delete(operation, queued, in_flight)

        await self.persist()
        return result

    def _enqueue_create(
        self, operation: PendingOperation, queued: list[PendingOperation]
    ) -> PendingOperation:
        for op in queued:
            if op.kind is OperationKind.CREATE:
                op.payload_snapshot = operation.payload_snapshot
                return op
        self._operations.append(operation)
        return operation

    def _enqueue_update(
        self,
        operation: PendingOperation,
        queued: list[PendingOperation],
        in_flight: PendingOperation | None,
    ) -> PendingOperation | None:
        deleting = any(op.kind is OperationKind.DELETE for op in queued)
        if deleting or (in_flight is not None and in_flight.kind is OperationKind.DELETE):
            logger.debug(f"Dropping update for {operation.local_id}: delete already pending")
            return None

        for op in queued:
            if op.kind in (OperationKind.CREATE, OperationKind.UPDATE):
                op.payload_snapshot = operation.payload_snapshot
                op.remote_id = op.remote_id or operation.remote_id
                return op

        self._operations.append(operation)
        return operation

    def _enqueue_delete(
        self,
        operation: PendingOperation,
        queued: list[PendingOperation],
        in_flight: PendingOperation | None,
    ) -> PendingOperation | None:
        had_pending_create = any(op.kind is OperationKind.CREATE for op in queued)
        self._remove_ops(queued)

        if had_pending_create:
            logger.debug(f"Create and delete for {operation.local_id} cancelled out")
            return None

        if operation.remote_id is None:
            if in_flight is not None and in_flight.remote_id:
                operation.remote_id = in_flight.remote_id
            elif in_flight is None:
                # Never reached the server and nothing on the wire: nothing to delete.
                return None

        self._operations.append(operation)
        return operation

    # =========================================================================
    # Draining
    # =========================================================================

    async def drain(self, apply_fn: ApplyFn) -> int:
        """Apply queued operations in order until one fails.

        Operations enqueued while the drain is running are picked up by
        the same drain. A failed operation and everything after it stay
        queued for the next attempt.

        Args:
            apply_fn: Coroutine function applying one operation remotely

        Returns:
            Number of operations applied successfully

        Raises:
            AuthenticationRequiredError: Propagated from apply_fn, without
                counting it as a failed attempt
        """
        await self.ensure_loaded()

        if self._draining:
            return 0

        self._draining = True
        applied = 0
        try:
            while self._operations:
                op = self._operations[0]
                now = self._clock()
                if op.next_attempt_at is not None and op.next_attempt_at > now:
                    logger.debug(
                        f"Drain paused: {op.kind.value} {op.target_id} backing off "
                        f"for {op.next_attempt_at - now}ms"
                    )
                    break

                self._in_flight = op.op_id
                try:
                    await apply_fn(op)
                except AuthenticationRequiredError:
                    raise
                except Exception as e:
                    await self._record_failure(op, e)
                    break
                finally:
                    self._in_flight = None

                self._remove_ops([op])
                await self.persist()
                applied += 1
        finally:
            self._draining = False

        return applied

    async def _record_failure(self, op: PendingOperation, error: Exception) -> None:
        op.attempts += 1
        op.last_error = str(error)

        # Transient failures (network, 5xx) never exhaust the budget.
        retryable = getattr(error, "retryable", False)
        if not retryable and op.attempts >= self.retry_policy.max_attempts:
            logger.error(
                f"Dropping {op.kind.value} for {op.target_id} after {op.attempts} attempts: "
                f"{error}"
            )
            self._remove_ops([op])
        else:
            delay = self.retry_policy.backoff_ms(op.attempts)
            op.next_attempt_at = self._clock() + delay
            logger.warning(
                f"{op.kind.value} for {op.target_id} failed (attempt {op.attempts}), "
                f"retrying in {delay}ms: {error}"
            )

        await self.persist()

    # =========================================================================
    # Queries and maintenance
    # =========================================================================

    @property
    def is_draining(self) -> bool:
        return self._draining

    def is_empty(self) -> bool:
        return not self._operations

    def __len__(self) -> int:
        return len(self._operations)

    def pending(self) -> list[PendingOperation]:
        """Snapshot of the queued operations in order."""
        return [PendingOperation.from_dict(op.to_dict()) for op in self._operations]

    def has_pending_create(self, local_id: str) -> bool:
        return any(
            op.kind is OperationKind.CREATE and op.local_id == local_id for op in self._operations
        )

    def pending_create_ids(self) -> set[str]:
        return {op.local_id for op in self._operations if op.kind is OperationKind.CREATE}

    def pending_delete_remote_ids(self) -> set[str]:
        return {
            op.remote_id
            for op in self._operations
            if op.kind is OperationKind.DELETE and op.remote_id
        }

    def bind_remote_id(self, local_id: str, remote_id: str) -> int:
        """Resolve forward references once a create has been acknowledged.

        In memory only; the queue is persisted when the create is removed.

        Returns:
            Number of operations rebound
        """
        count = 0
        for op in self._operations:
            if op.local_id == local_id and op.remote_id != remote_id:
                op.remote_id = remote_id
                count += 1
        return count

    async def discard_for(
        self, local_id: str, kinds: Iterable[OperationKind] | None = None
    ) -> int:
        """Remove queued (not in-flight) operations for a record.

        Args:
            local_id: Record whose operations to drop
            kinds: Restrict to these kinds (default: all)

        Returns:
            Number of operations removed
        """
        await self.ensure_loaded()
        count = self.drop_for(local_id, kinds)
        if count:
            await self.persist()
        return count

    def drop_for(self, local_id: str, kinds: Iterable[OperationKind] | None = None) -> int:
        """In-memory variant of discard_for; the caller persists."""
        wanted = set(kinds) if kinds is not None else set(OperationKind)
        doomed = [
            op
            for op in self._operations
            if op.local_id == local_id and op.kind in wanted and op.op_id != self._in_flight
        ]
        self._remove_ops(doomed)
        return len(doomed)

    async def reset_backoff(self) -> None:
        """Make every queued operation eligible immediately (e.g. on reconnect)."""
        await self.ensure_loaded()
        changed = False
        for op in self._operations:
            if op.next_attempt_at is not None:
                op.next_attempt_at = None
                changed = True
        if changed:
            await self.persist()

    async def clear(self) -> int:
        """Drop every queued operation.

        Returns:
            Number of operations removed
        """
        await self.ensure_loaded()
        count = len(self._operations)
        self._operations = [op for op in self._operations if op.op_id == self._in_flight]
        await self.persist()
        return count

    def _in_flight_for(self, local_id: str) -> PendingOperation | None:
        if self._in_flight is None:
            return None
        for op in self._operations:
            if op.op_id == self._in_flight and op.local_id == local_id:
                return op
        return None

    def _remove_ops(self, ops: Iterable[PendingOperation]) -> None:
        doomed = {op.op_id for op in ops}
        self._operations = [op for op in self._operations if op.op_id not in doomed]
