"""
Local session cache.

Holds the mapping of local_id -> SessionRecord for this device and
persists it through a KeyValueStore under a single key.

Every mutation updates the in-memory map synchronously and then awaits
persistence before returning, so durable storage is never more than one
operation behind the in-memory view.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from ..exceptions import SessionNotFoundError, ValidationError
from ..protocol import MUTABLE_FIELDS, RemoteSession, SessionRecord, now_ms
from .kv_store import KeyValueStore

logger = logging.getLogger(__name__)

SESSIONS_KEY = "sessions"


def sorted_for_display(records: Iterable[SessionRecord]) -> list[SessionRecord]:
    """Sort records most recently modified first."""
    return sorted(records, key=lambda r: r.modified_at, reverse=True)


def _validate_fields(fields: Mapping[str, Any], *, require_identity: bool) -> None:
    unknown = set(fields) - set(MUTABLE_FIELDS)
    if unknown:
        raise ValidationError(", ".join(sorted(unknown)), "not a mutable session field")

    for name in ("domain", "name"):
        if name in fields or require_identity:
            value = fields.get(name)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(name, "must be a non-empty string")

    if "payload" in fields and not isinstance(fields["payload"], dict):
        raise ValidationError("payload", "must be a mapping")


class LocalSessionCache:
    """In-memory session map backed by a KeyValueStore.

    Records are looked up by local_id or remote_id. Callers always get
    copies; the cache's own records are only changed through its methods.
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str = SESSIONS_KEY,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] | None = None,
    ):
        """Initialize the cache.

        Args:
            store: Durable key-value store
            key: Key the cache is persisted under
            clock: Source of epoch-millisecond timestamps
            id_factory: Generator for new local identifiers
        """
        self.store = store
        self.key = key
        self._clock = clock
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))
        self._records: dict[str, SessionRecord] = {}
        self._loaded = False

    async def ensure_loaded(self) -> None:
        """Load records from the store if not already loaded."""
        if self._loaded:
            return

        raw = await self.store.get(self.key)
        records: dict[str, SessionRecord] = {}
        seen_remote: set[str] = set()

        for item in raw or []:
            try:
                record = SessionRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable cached session: {e}")
                continue
            if record.remote_id is not None:
                if record.remote_id in seen_remote:
                    logger.warning(f"Dropping duplicate cached session for remote id {record.remote_id}")
                    continue
                seen_remote.add(record.remote_id)
            records[record.local_id] = record

        self._records = records
        self._loaded = True

    async def persist(self) -> None:
        """Write the full cache to the store."""
        await self.store.set(self.key, [r.to_dict() for r in self._records.values()])

    def _find(self, session_id: str) -> SessionRecord | None:
        record = self._records.get(session_id)
        if record is not None:
            return record
        return self._find_by_remote_id(session_id)

    def _find_by_remote_id(self, remote_id: str) -> SessionRecord | None:
        for record in self._records.values():
            if record.remote_id == remote_id:
                return record
        return None

    # =========================================================================
    # Public entry points
    # =========================================================================

    async def create(self, record: SessionRecord | Mapping[str, Any]) -> SessionRecord:
        """Store a newly captured session.

        A fresh local_id is always assigned and modified_at is set to now,
        whatever the input carries.

        Args:
            record: A SessionRecord or a mapping of mutable fields

        Returns:
            Copy of the stored record

        Raises:
            ValidationError: If domain or name is empty
        """
        await self.ensure_loaded()

        if isinstance(record, SessionRecord):
            fields = {name: getattr(record, name) for name in MUTABLE_FIELDS}
        else:
            fields = dict(record)
        _validate_fields(fields, require_identity=True)

        now = self._clock()
        stored = SessionRecord(
            local_id=self._new_id(),
            domain=fields["domain"],
            name=fields["name"],
            payload=dict(fields.get("payload") or {}),
            has_restricted_content=bool(fields.get("has_restricted_content", False)),
            modified_at=now,
            last_used=fields.get("last_used") or now,
            created_at=now,
        )
        self._records[stored.local_id] = stored
        await self.persist()
        return stored.copy()

    async def update(self, session_id: str, fields: Mapping[str, Any]) -> SessionRecord:
        """Merge fields into an existing record and bump its modified_at.

        Args:
            session_id: local_id or remote_id of the record
            fields: Mutable fields to change

        Returns:
            Copy of the updated record

        Raises:
            SessionNotFoundError: If no record matches session_id
            ValidationError: If fields contains unknown or invalid values
        """
        await self.ensure_loaded()
        _validate_fields(fields, require_identity=False)

        record = self._find(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)

        for name, value in fields.items():
            if name == "payload":
                value = dict(value)
            elif name == "has_restricted_content":
                value = bool(value)
            setattr(record, name, value)
        record.modified_at = max(self._clock(), record.modified_at)
        record.rejected_version = None
        record.sync_error = None

        await self.persist()
        return record.copy()

    async def delete(self, session_id: str) -> SessionRecord:
        """Remove a record.

        Not idempotent: deleting an already-removed record raises.

        Returns:
            The removed record

        Raises:
            SessionNotFoundError: If no record matches session_id
        """
        await self.ensure_loaded()

        record = self._find(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)

        del self._records[record.local_id]
        await self.persist()
        return record

    async def get(self, session_id: str) -> SessionRecord | None:
        """Get a record by local_id or remote_id."""
        await self.ensure_loaded()
        record = self._find(session_id)
        return record.copy() if record else None

    async def list(self) -> list[SessionRecord]:
        """All records, in no particular order."""
        await self.ensure_loaded()
        return [r.copy() for r in self._records.values()]

    async def list_by_domain(self, domain: str) -> list[SessionRecord]:
        """Records for one domain, in no particular order."""
        await self.ensure_loaded()
        return [r.copy() for r in self._records.values() if r.domain == domain]

    # =========================================================================
    # Sync engine primitives - in-memory only, caller awaits persist()
    # =========================================================================

    def snapshot(self) -> list[SessionRecord]:
        """Copies of all records as currently held in memory."""
        return [r.copy() for r in self._records.values()]

    def find_by_remote_id(self, remote_id: str) -> SessionRecord | None:
        record = self._find_by_remote_id(remote_id)
        return record.copy() if record else None

    def get_local(self, local_id: str) -> SessionRecord | None:
        record = self._records.get(local_id)
        return record.copy() if record else None

    def attach_remote_id(
        self, local_id: str, remote_id: str, synced_at: int | None = None
    ) -> SessionRecord | None:
        """Record the server identity of a record after its create was acknowledged.

        If another record already claims remote_id (materialized from a
        fetch that raced the create), that duplicate is dropped.

        Returns:
            Copy of the updated record, or None if it was deleted meanwhile
        """
        record = self._records.get(local_id)
        if record is None:
            return None

        duplicate = self._find_by_remote_id(remote_id)
        if duplicate is not None and duplicate.local_id != local_id:
            logger.warning(
                f"Remote id {remote_id} already cached as {duplicate.local_id}; "
                f"keeping {local_id}"
            )
            del self._records[duplicate.local_id]

        record.remote_id = remote_id
        record.last_synced_at = synced_at
        return record.copy()

    def apply_remote(
        self, local_id: str, remote: RemoteSession, synced_at: int | None = None
    ) -> SessionRecord | None:
        """Overwrite a record's mutable fields with the remote values."""
        record = self._records.get(local_id)
        if record is None:
            return None

        fresh = remote.to_record(local_id, synced_at)
        fresh.created_at = record.created_at or fresh.created_at
        self._records[local_id] = fresh
        return fresh.copy()

    def insert_remote(self, remote: RemoteSession, synced_at: int | None = None) -> SessionRecord:
        """Materialize a remote record that this device has not seen yet."""
        existing = self._find_by_remote_id(remote.id)
        if existing is not None:
            updated = self.apply_remote(existing.local_id, remote, synced_at)
            assert updated is not None
            return updated

        record = remote.to_record(self._new_id(), synced_at)
        self._records[record.local_id] = record
        return record.copy()

    def mark_rejected(self, local_id: str, version: int, error: str) -> None:
        """Remember that the server refused the given version of a record."""
        record = self._records.get(local_id)
        if record is not None:
            record.rejected_version = version
            record.sync_error = error

    def adopt_remote_version(self, local_id: str, remote: RemoteSession, synced_at: int) -> bool:
        """Take the server's modified_at for a record it just acknowledged.

        Only applies while the local content still equals what the server
        stored; a record edited since the push keeps its own timestamp.

        Returns:
            True if the record now carries the server version
        """
        record = self._records.get(local_id)
        if record is None or not record.same_content(remote):
            return False
        record.modified_at = remote.modified_at
        record.last_synced_at = synced_at
        return True

    def mark_synced(self, local_id: str, synced_at: int) -> None:
        record = self._records.get(local_id)
        if record is not None:
            record.last_synced_at = synced_at

    def discard(self, local_id: str) -> SessionRecord | None:
        """Remove a record without raising if it is already gone."""
        return self._records.pop(local_id, None)

    def __len__(self) -> int:
        return len(self._records)
