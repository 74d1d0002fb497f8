"""Local cache for Tourplan clients.

Provides the durable cache document holding:
- Users, weekly plans and custom locations
- The admin week override
- The queue of mutations waiting to reach the remote store
"""

from .backends import SQLiteBackend, StorageBackend
from .local_store import PLAN_LENGTH, WEEKLY_OFF, LocalStore, display_locations
from .queue import SyncAction, SyncQueueItem

__all__ = [
    "LocalStore",
    "PLAN_LENGTH",
    "SQLiteBackend",
    "StorageBackend",
    "SyncAction",
    "SyncQueueItem",
    "WEEKLY_OFF",
    "display_locations",
]
