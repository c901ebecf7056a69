"""
Data model for browser session sync.

Defines the records that flow between the local cache, the pending
operation queue and the remote session API:

- SessionRecord: a saved session as held in the local cache
- RemoteSession: the server's view of a session record
- SyncStatus: summary of the sync engine's state

All timestamps are integer epoch milliseconds so that they round-trip
through JSON without loss of precision.
"""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Fields a local edit or a remote overwrite may change.
MUTABLE_FIELDS = ("name", "domain", "payload", "has_restricted_content", "last_used")

# Wire keys that are record metadata rather than captured payload.
_WIRE_METADATA_KEYS = {
    "id",
    "_id",
    "__v",
    "user",
    "name",
    "domain",
    "hasRestrictedContent",
    "hasHttpOnlyCookies",
    "lastUsed",
    "modifiedAt",
    "updatedAt",
    "createdAt",
}


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return time.time_ns() // 1_000_000


def to_epoch_ms(value: Any, default: int | None = None) -> int | None:
    """Normalize a timestamp to epoch milliseconds.

    Accepts integers/floats (already epoch ms), datetimes and ISO-8601
    strings (a trailing ``Z`` is treated as UTC). Naive datetimes are
    assumed to be UTC.

    Raises:
        ValueError: If a string cannot be parsed as ISO-8601
    """
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return int(value.timestamp() * 1000)
    raise ValueError(f"Not a timestamp: {value!r}")


def ms_to_iso(value: int | None) -> str | None:
    """Render epoch milliseconds as an ISO-8601 UTC string."""
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=UTC).isoformat()


@dataclass
class SessionRecord:
    """A saved snapshot of a site's client-side authentication state.

    Attributes:
        local_id: Client-generated identifier, never reused
        domain: Site the session belongs to
        name: User-facing label
        payload: Captured cookies/localStorage/sessionStorage (opaque to sync)
        has_restricted_content: Whether the capture included HttpOnly cookies
        modified_at: Last modification time (epoch ms)
        last_used: Last time the session was restored (epoch ms)
        created_at: Creation time (epoch ms)
        remote_id: Server-assigned identifier, None until created remotely
        last_synced_at: Last time the record matched the server (epoch ms)
        rejected_version: modified_at of the version the server refused, if any
        sync_error: Reason the server gave for refusing it
    """

    local_id: str
    domain: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    has_restricted_content: bool = False
    modified_at: int = 0
    last_used: int = 0
    created_at: int = 0
    remote_id: str | None = None
    last_synced_at: int | None = None
    rejected_version: int | None = None
    sync_error: str | None = None

    def copy(self) -> SessionRecord:
        """Return an independent copy (payload included)."""
        return copy.deepcopy(self)

    @property
    def is_held_back(self) -> bool:
        """Whether the current version was refused by the server.

        Such a record is not pushed again until a local edit changes it.
        """
        return self.rejected_version is not None and self.rejected_version == self.modified_at

    def content(self) -> tuple[Any, ...]:
        """Mutable field values, used to tell whether two versions differ."""
        return tuple(getattr(self, name) for name in MUTABLE_FIELDS)

    def same_content(self, remote: RemoteSession) -> bool:
        """Check whether this record holds the same mutable values as a remote one."""
        return self.content() == remote.content()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for local persistence."""
        return {
            "local_id": self.local_id,
            "remote_id": self.remote_id,
            "domain": self.domain,
            "name": self.name,
            "payload": self.payload,
            "has_restricted_content": self.has_restricted_content,
            "modified_at": self.modified_at,
            "last_used": self.last_used,
            "created_at": self.created_at,
            "last_synced_at": self.last_synced_at,
            "rejected_version": self.rejected_version,
            "sync_error": self.sync_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        """Create from a persisted dictionary."""
        return cls(
            local_id=data["local_id"],
            remote_id=data.get("remote_id"),
            domain=data["domain"],
            name=data["name"],
            payload=data.get("payload") or {},
            has_restricted_content=bool(data.get("has_restricted_content", False)),
            modified_at=to_epoch_ms(data.get("modified_at"), 0),
            last_used=to_epoch_ms(data.get("last_used"), 0),
            created_at=to_epoch_ms(data.get("created_at"), 0),
            last_synced_at=to_epoch_ms(data.get("last_synced_at")),
            rejected_version=to_epoch_ms(data.get("rejected_version")),
            sync_error=data.get("sync_error"),
        )

    def to_wire(self) -> dict[str, Any]:
        """Request body for the remote API (payload keys are spread inline)."""
        body: dict[str, Any] = dict(self.payload)
        body.update(
            {
                "name": self.name,
                "domain": self.domain,
                "hasRestrictedContent": self.has_restricted_content,
                "lastUsed": self.last_used,
                "modifiedAt": self.modified_at,
            }
        )
        return body


@dataclass
class RemoteSession:
    """A session record as returned by the remote session API."""

    id: str
    modified_at: int
    domain: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    has_restricted_content: bool = False
    last_used: int = 0
    created_at: int = 0

    def content(self) -> tuple[Any, ...]:
        return tuple(getattr(self, name) for name in MUTABLE_FIELDS)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> RemoteSession:
        """Parse a server response object.

        Accepts ``id`` or Mongo-style ``_id``, and ``modifiedAt`` or
        ``updatedAt`` in either ISO-8601 or epoch-millisecond form.

        Raises:
            ValueError: If the object has no identifier
        """
        remote_id = data.get("id") or data.get("_id")
        if not remote_id:
            raise ValueError("Remote session has no id")

        modified_raw = data.get("modifiedAt", data.get("updatedAt"))
        last_used = to_epoch_ms(data.get("lastUsed"), 0)
        created_at = to_epoch_ms(data.get("createdAt"), 0)

        restricted = data.get("hasRestrictedContent", data.get("hasHttpOnlyCookies", False))
        payload = {k: v for k, v in data.items() if k not in _WIRE_METADATA_KEYS}

        return cls(
            id=str(remote_id),
            modified_at=to_epoch_ms(modified_raw, last_used or created_at),
            domain=data.get("domain", ""),
            name=data.get("name", ""),
            payload=payload,
            has_restricted_content=bool(restricted),
            last_used=last_used,
            created_at=created_at,
        )

    def to_record(self, local_id: str, synced_at: int | None = None) -> SessionRecord:
        """Materialize as a local record with the given local identifier."""
        return SessionRecord(
            local_id=local_id,
            remote_id=self.id,
            domain=self.domain,
            name=self.name,
            payload=copy.deepcopy(self.payload),
            has_restricted_content=self.has_restricted_content,
            modified_at=self.modified_at,
            last_used=self.last_used,
            created_at=self.created_at,
            last_synced_at=synced_at,
        )


@dataclass
class SyncStatus:
    """Current synchronization status."""

    is_synced: bool
    pending_operations: int
    last_synced_at: int | None
    is_offline: bool = False
    is_syncing: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "is_synced": self.is_synced,
            "pending_operations": self.pending_operations,
            "last_synced_at": ms_to_iso(self.last_synced_at),
            "is_offline": self.is_offline,
            "is_syncing": self.is_syncing,
        }
