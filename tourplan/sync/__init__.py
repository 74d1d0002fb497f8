"""Sync infrastructure for Tourplan clients.

Provides the engine that keeps the local cache usable offline, replays queued
mutations against the remote store and merges server state back in.
"""

from .engine import LoginResult, MutationResult, SyncEngine, SyncResult, SyncStatus

__all__ = ["LoginResult", "MutationResult", "SyncEngine", "SyncResult", "SyncStatus"]
