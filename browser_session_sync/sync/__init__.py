"""
Sync module.

Reconciles the local session cache with the remote session API:
queued local mutations are pushed first, then the remote set is pulled
and merged last-write-wins.
"""

from .connectivity import ConnectivityMonitor
from .engine import SyncEngine, SyncPhase, SyncResult, SyncState
from .merge import MergeAction, MergePlan, plan_merge, resolve
from .queue import (
    QUEUE_KEY,
    OperationKind,
    PendingOperation,
    PendingOperationQueue,
    RetryPolicy,
)
from .remote import HttpRemoteSessionAPI, RemoteSessionAPI

__all__ = [
    "SyncEngine",
    "SyncState",
    "SyncPhase",
    "SyncResult",
    "PendingOperation",
    "PendingOperationQueue",
    "OperationKind",
    "RetryPolicy",
    "QUEUE_KEY",
    "MergeAction",
    "MergePlan",
    "plan_merge",
    "resolve",
    "ConnectivityMonitor",
    "RemoteSessionAPI",
    "HttpRemoteSessionAPI",
]
