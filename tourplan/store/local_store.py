"""Local cache of users, plans, custom locations and the sync queue.

The whole cache lives in one JSON document. Every mutation works on a copy of
the document and only replaces the in-memory state once the backend has
accepted the write, so a failed save leaves the previous state intact.
"""

import copy
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from ..errors import StorageError
from .backends import StorageBackend
from .queue import (
    AdminOverrideClearPayload,
    AdminOverridePayload,
    CustomLocationPayload,
    Payload,
    PlanUpdatePayload,
    SyncAction,
    SyncQueueItem,
    UserDeletePayload,
    UserUpdatePayload,
    new_item_id,
)

logger = logging.getLogger(__name__)

PLAN_LENGTH = 7
WEEKLY_OFF = "Weekly Off"

KeyPath = str | Sequence[str]


def display_locations(locations: Sequence[str] | None) -> list[str]:
    """Locations as shown to a user: Sunday reads "Weekly Off" when unset."""
    shown = list(locations or [""] * PLAN_LENGTH)
    shown += [""] * (PLAN_LENGTH - len(shown))
    if not shown[PLAN_LENGTH - 1]:
        shown[PLAN_LENGTH - 1] = WEEKLY_OFF
    return shown


def _split_path(path: KeyPath) -> list[str]:
    if isinstance(path, str):
        return [part for part in path.split(".") if part]
    return list(path)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalStore:
    """Synchronous, transactional cache document with a durable backend."""

    def __init__(
        self,
        backend: StorageBackend,
        seed_users: dict[str, dict[str, Any]] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the local store.

        Args:
            backend: Persistence backend that owns the durable copy.
            seed_users: Users created when no document exists yet.
            clock: Source of the current time, for timestamps.
        """
        self._backend = backend
        self._seed_users = copy.deepcopy(seed_users or {})
        self._clock = clock
        self._doc: dict[str, Any] = self._load_document()

    # ==================== Document lifecycle ====================

    def _defaults(self) -> dict[str, Any]:
        return {
            "users": copy.deepcopy(self._seed_users),
            "plans": {},
            "customLocations": {},
            "adminOverride": None,
            "syncQueue": [],
            "lastSync": None,
        }

    def _backfill(self, existing: dict[str, Any]) -> dict[str, Any]:
        """Fill in missing top-level keys without touching existing data."""
        return {**self._defaults(), **existing}

    def _load_document(self) -> dict[str, Any]:
        existing = self._backend.load()
        if not existing:
            doc = self._defaults()
            logger.info("Initializing new cache document with seed users")
        else:
            doc = self._backfill(existing)

        self._backend.save(doc)
        return doc

    def _snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._doc)

    def _commit(self, doc: dict[str, Any]) -> None:
        """Persist a modified copy and make it current."""
        self._backend.save(doc)
        self._doc = doc

    def _enqueue(self, doc: dict[str, Any], action: SyncAction, payload: Payload) -> SyncQueueItem:
        item = SyncQueueItem(
            id=new_item_id(),
            action=action,
            payload=payload,
            timestamp=self._clock().isoformat(),
            attempts=0,
        )
        doc["syncQueue"].append(item.to_dict())
        return item

    def close(self) -> None:
        self._backend.close()

    # ==================== Generic access ====================

    def read(self, path: KeyPath, default: Any = None) -> Any:
        """Read a value from the document by dotted path or key sequence."""
        node: Any = self._doc
        for part in _split_path(path):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return copy.deepcopy(node)

    def write(self, path: KeyPath, value: Any) -> None:
        """Write a value into the document, creating intermediate objects.

        Raises:
            StorageError: If the document could not be persisted.
            ValueError: If the path is empty.
        """
        parts = _split_path(path)
        if not parts:
            raise ValueError("Path must not be empty")

        doc = self._snapshot()
        node = doc
        for part in parts[:-1]:
            if not isinstance(node.get(part), dict):
                node[part] = {}
            node = node[part]
        node[parts[-1]] = copy.deepcopy(value)
        self._commit(doc)

    # ==================== Users ====================

    def get_users(self) -> dict[str, dict[str, Any]]:
        return self.read("users", {})

    def get_user(self, name: str) -> dict[str, Any] | None:
        return self.read(("users", name))

    def set_user(self, name: str, data: dict[str, Any]) -> SyncQueueItem:
        """Add or replace a user and queue the remote update."""
        doc = self._snapshot()
        record = {"password": str(data.get("password", "")), "isAdmin": bool(data.get("isAdmin", False))}
        doc["users"][name] = record

        item = self._enqueue(
            doc,
            SyncAction.USER_UPDATE,
            UserUpdatePayload(name=name, password=record["password"], is_admin=record["isAdmin"]),
        )
        self._commit(doc)
        return item

    def remove_user(self, name: str) -> SyncQueueItem:
        """Remove a user with all their plans and custom locations."""
        doc = self._snapshot()
        doc["users"].pop(name, None)

        for week_plans in doc["plans"].values():
            week_plans.pop(name, None)
        doc["customLocations"].pop(name, None)

        item = self._enqueue(doc, SyncAction.USER_DELETE, UserDeletePayload(name=name))
        self._commit(doc)
        logger.info(f"Removed user {name} and their plans")
        return item

    # ==================== Plans ====================

    def get_plans_for_week(self, week_id: str) -> dict[str, list[str]]:
        return self.read(("plans", week_id), {})

    def get_plan(self, week_id: str, user_name: str) -> list[str] | None:
        return self.read(("plans", week_id, user_name))

    def set_plan(self, week_id: str, user_name: str, locations: Sequence[str]) -> SyncQueueItem:
        """Overwrite a user's seven-day plan for a week and queue it."""
        locations = _validate_locations(locations)

        doc = self._snapshot()
        doc["plans"].setdefault(week_id, {})[user_name] = locations

        item = self._enqueue(
            doc,
            SyncAction.PLAN_UPDATE,
            PlanUpdatePayload(week_id=week_id, user_name=user_name, locations=tuple(locations)),
        )
        self._commit(doc)
        return item

    # ==================== Custom locations ====================

    def get_custom_locations(self, user_name: str) -> dict[str, dict[str, str]]:
        return self.read(("customLocations", user_name), {})

    def add_custom_location(
        self, user_name: str, week_id: str, day_date: str, location: str
    ) -> SyncQueueItem:
        doc = self._snapshot()
        user_locations = doc["customLocations"].setdefault(user_name, {})
        user_locations.setdefault(week_id, {})[day_date] = location

        item = self._enqueue(
            doc,
            SyncAction.CUSTOM_LOCATION_ADD,
            CustomLocationPayload(
                user_name=user_name, week_id=week_id, day_date=day_date, location=location
            ),
        )
        self._commit(doc)
        return item

    # ==================== Admin override ====================

    def get_admin_override(self) -> dict[str, Any] | None:
        return self.read("adminOverride")

    def set_admin_override(self, admin_name: str, week_start: str) -> SyncQueueItem:
        doc = self._snapshot()
        doc["adminOverride"] = {
            "adminName": admin_name,
            "overrideWeekStart": week_start,
            "timestamp": self._clock().isoformat(),
        }

        item = self._enqueue(
            doc,
            SyncAction.ADMIN_OVERRIDE,
            AdminOverridePayload(admin_name=admin_name, override_week_start=week_start),
        )
        self._commit(doc)
        return item

    def clear_admin_override(self) -> SyncQueueItem:
        doc = self._snapshot()
        doc["adminOverride"] = None

        item = self._enqueue(doc, SyncAction.ADMIN_OVERRIDE_CLEAR, AdminOverrideClearPayload())
        self._commit(doc)
        return item

    # ==================== Sync queue ====================

    def get_sync_queue(self) -> list[SyncQueueItem]:
        """Get queued items, oldest first."""
        return [SyncQueueItem.from_dict(raw) for raw in self._doc["syncQueue"]]

    def get_queue_item(self, item_id: str) -> SyncQueueItem | None:
        for raw in self._doc["syncQueue"]:
            if str(raw["id"]) == item_id:
                return SyncQueueItem.from_dict(raw)
        return None

    @property
    def queue_length(self) -> int:
        return len(self._doc["syncQueue"])

    def dequeue(self, item_id: str) -> bool:
        """Remove an item from the queue. Returns False if it was not queued."""
        doc = self._snapshot()
        before = len(doc["syncQueue"])
        doc["syncQueue"] = [raw for raw in doc["syncQueue"] if str(raw["id"]) != item_id]
        if len(doc["syncQueue"]) == before:
            return False

        self._commit(doc)
        return True

    def mark_attempt(self, item_id: str, attempts: int) -> bool:
        """Record the attempt count for a queued item."""
        doc = self._snapshot()
        for raw in doc["syncQueue"]:
            if str(raw["id"]) == item_id:
                raw["attempts"] = attempts
                self._commit(doc)
                return True
        return False

    def requeue(self, item: SyncQueueItem) -> None:
        """Append a previously removed item to the back of the queue."""
        doc = self._snapshot()
        raw = item.to_dict()
        raw["attempts"] = 0
        doc["syncQueue"].append(raw)
        self._commit(doc)

    def pending_keys(self) -> dict[SyncAction, set[tuple[str, ...]]]:
        """Keys touched by queued items, grouped by action."""
        keys: dict[SyncAction, set[tuple[str, ...]]] = {action: set() for action in SyncAction}
        for item in self.get_sync_queue():
            match item.payload:
                case UserUpdatePayload(name=name) | UserDeletePayload(name=name):
                    keys[item.action].add((name,))
                case PlanUpdatePayload(week_id=week_id, user_name=user_name):
                    keys[item.action].add((week_id, user_name))
                case CustomLocationPayload(user_name=user_name, week_id=week_id, day_date=day):
                    keys[item.action].add((user_name, week_id, day))
                case AdminOverridePayload() | AdminOverrideClearPayload():
                    keys[item.action].add(())
                case _:
                    pass
        return keys

    def get_last_sync(self) -> str | None:
        return self._doc["lastSync"]

    def set_last_sync(self, timestamp: str | None = None) -> None:
        self.write("lastSync", timestamp or self._clock().isoformat())

    # ==================== Server reconciliation ====================

    def merge_remote_users(self, remote_users: Iterable[dict[str, Any]]) -> int:
        """Merge a server user list, server-wins per field.

        Fields the server did not send (such as passwords) are left alone.
        Only users already in the cache are updated, since a record without a
        password could never log in locally. Users with a queued local change
        are skipped. Nothing is enqueued.

        Returns:
            Number of users updated.
        """
        pending = self.pending_keys()
        shadowed = pending[SyncAction.USER_UPDATE] | pending[SyncAction.USER_DELETE]

        doc = self._snapshot()
        merged = 0
        for remote in remote_users:
            name = remote.get("name")
            if name not in doc["users"] or (name,) in shadowed:
                continue
            fields = {k: v for k, v in remote.items() if k != "name"}
            doc["users"][name].update(fields)
            merged += 1

        if merged:
            self._commit(doc)
        return merged

    def merge_remote_plans(self, week_id: str, remote_plans: dict[str, Any]) -> int:
        """Merge server plans for a week. Nothing is enqueued.

        Returns:
            Number of plans written.
        """
        shadowed = self.pending_keys()[SyncAction.PLAN_UPDATE]

        doc = self._snapshot()
        merged = 0
        for user_name, locations in remote_plans.items():
            if not locations or (week_id, user_name) in shadowed:
                continue
            if not isinstance(locations, list) or len(locations) != PLAN_LENGTH:
                logger.warning(f"Ignoring malformed server plan for {user_name} in {week_id}")
                continue
            doc["plans"].setdefault(week_id, {})[user_name] = [str(loc) for loc in locations]
            merged += 1

        if merged:
            self._commit(doc)
        return merged

    def apply_remote_override(self, remote: dict[str, Any] | None) -> bool:
        """Apply the server's admin override. Nothing is enqueued.

        Returns:
            False if a queued local override change shadowed the server value.
        """
        pending = self.pending_keys()
        if pending[SyncAction.ADMIN_OVERRIDE] or pending[SyncAction.ADMIN_OVERRIDE_CLEAR]:
            return False

        doc = self._snapshot()
        if remote and remote.get("adminName") and remote.get("overrideWeekStart"):
            current = doc["adminOverride"] or {"timestamp": self._clock().isoformat()}
            current.update({k: v for k, v in remote.items() if v is not None})
            doc["adminOverride"] = current
        else:
            doc["adminOverride"] = None

        self._commit(doc)
        return True

    # ==================== Maintenance ====================

    def export_data(self) -> dict[str, Any]:
        """Copy of the whole document, for backup."""
        return self._snapshot()

    def import_data(self, data: dict[str, Any]) -> None:
        """Replace the document with a backup, backfilling missing keys."""
        if not isinstance(data, dict):
            raise StorageError("Imported data must be an object")
        self._commit(self._backfill(copy.deepcopy(data)))
        logger.info("Imported cache document from backup")

    def clear_all(self) -> None:
        """Reset the cache to its defaults, discarding the queue."""
        self._commit(self._defaults())
        logger.warning("Cache document reset to defaults")

    def get_storage_info(self) -> dict[str, Any]:
        size_in_bytes = len(json.dumps(self._doc).encode("utf-8"))
        return {
            "size_in_bytes": size_in_bytes,
            "size_in_kb": round(size_in_bytes / 1024, 2),
            "item_count": len(self._doc),
            "queue_length": self.queue_length,
        }


def _validate_locations(locations: Sequence[str]) -> list[str]:
    if isinstance(locations, str) or len(locations) != PLAN_LENGTH:
        raise ValueError(f"A plan needs exactly {PLAN_LENGTH} locations")
    return [str(loc) for loc in locations]
