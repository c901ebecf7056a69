"""
Synced session storage combining local and remote.

Provides offline-first storage that:
- Writes to local first, queues for sync
- Reads from local only
- Pushes immediately when online and signed in
- Triggers sync on connectivity changes
"""

from .store import SyncedSessionStore

__all__ = [
    "SyncedSessionStore",
]
