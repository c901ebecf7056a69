"""
Browser Session Sync

Offline-first synchronization of saved browser sessions between a
device-local store and a remote session API.

Provides:
- Local session cache persisted through an async key-value store
- Durable pending-operation queue with coalescing and bounded retry
- Last-write-wins reconciliation against the full remote set
- Connectivity-aware background sync

Usage:

    >>> from browser_session_sync import SyncConfig, SyncedSessionStore
    >>> store = await SyncedSessionStore.create(SyncConfig.from_environment())
    >>> await store.start()
    >>> record = await store.create_session(
    ...     "example.com",
    ...     "work account",
    ...     payload={"cookies": [...], "localStorage": {...}},
    ... )
    >>> result = await store.sync_now()
    >>> await store.close()

Lower-level pieces:

    # Engine wired by hand (custom store, API or credential source)
    from browser_session_sync.sync import SyncEngine, PendingOperationQueue
    from browser_session_sync.local import LocalSessionCache, MemoryKeyValueStore
"""

from .config import SyncConfig
from .domain_utils import extract_domain, is_domain_blacklisted

# Exceptions
from .exceptions import (
    AuthenticationRequiredError,
    ConfigurationError,
    NetworkUnavailableError,
    RemoteServerError,
    RemoteSessionGoneError,
    ServerRejectedError,
    SessionNotFoundError,
    SessionSyncError,
    StorageIOError,
    ValidationError,
)

# Identity
from .identity import (
    CredentialProvider,
    KeyValueCredentialProvider,
    StaticCredentialProvider,
)

# Local storage
from .local import (
    JsonFileKeyValueStore,
    KeyValueStore,
    LocalSessionCache,
    MemoryKeyValueStore,
)
from .protocol import RemoteSession, SessionRecord, SyncStatus

# Sync
from .sync import (
    ConnectivityMonitor,
    HttpRemoteSessionAPI,
    OperationKind,
    PendingOperation,
    PendingOperationQueue,
    RemoteSessionAPI,
    RetryPolicy,
    SyncEngine,
    SyncResult,
)
from .synced import SyncedSessionStore

__all__ = [
    # Entry point
    "SyncedSessionStore",
    "SyncConfig",
    # Data model
    "SessionRecord",
    "RemoteSession",
    "SyncStatus",
    # Local storage
    "KeyValueStore",
    "MemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "LocalSessionCache",
    # Sync
    "SyncEngine",
    "SyncResult",
    "PendingOperation",
    "PendingOperationQueue",
    "OperationKind",
    "RetryPolicy",
    "ConnectivityMonitor",
    "RemoteSessionAPI",
    "HttpRemoteSessionAPI",
    # Identity
    "CredentialProvider",
    "StaticCredentialProvider",
    "KeyValueCredentialProvider",
    # Domains
    "extract_domain",
    "is_domain_blacklisted",
    # Exceptions
    "SessionSyncError",
    "SessionNotFoundError",
    "ValidationError",
    "NetworkUnavailableError",
    "AuthenticationRequiredError",
    "ServerRejectedError",
    "RemoteSessionGoneError",
    "RemoteServerError",
    "StorageIOError",
    "ConfigurationError",
]

__version__ = "0.1.0"
