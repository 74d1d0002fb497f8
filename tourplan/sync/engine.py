"""Sync engine: local-first mutations, queue replay and read reconciliation.

Every mutation is written to the local store first, which enqueues a durable
record of the remote effect in the same transaction. Replay sends queued
items strictly in insertion order, one at a time, and removes each one only
once the remote has accepted it, rejected it, or it has run out of attempts.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Sequence

from ..errors import (
    QueueExhausted,
    RemoteError,
    RemoteRejected,
    RemoteUnavailable,
    StorageError,
)
from ..remote import RemoteGateway
from ..store import LocalStore, SyncAction, SyncQueueItem
from ..store.queue import (
    AdminOverrideClearPayload,
    AdminOverridePayload,
    CustomLocationPayload,
    PlanUpdatePayload,
    UserDeletePayload,
    UserUpdatePayload,
)
from ..week_clock import compute_week

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
PASSWORD_PATTERN = re.compile(r"^[0-9]{4}$")


def is_valid_password(password: str) -> bool:
    """Passwords are exactly four digits."""
    return bool(PASSWORD_PATTERN.match(password or ""))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncStatus(Enum):
    """Outcome of a replay pass."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some items left queued, dropped or rejected
    OFFLINE = "offline"
    SKIPPED = "skipped"  # Another pass was already running


@dataclass
class SyncResult:
    """Result of a replay pass."""

    status: SyncStatus
    settled: int = 0
    retried: int = 0
    dropped: list[SyncQueueItem] = field(default_factory=list)
    rejected: list[SyncQueueItem] = field(default_factory=list)
    timestamp: datetime | None = None

    def touched(self, item_id: str) -> bool:
        """Whether an item was dropped or rejected during this pass."""
        return any(i.id == item_id for i in self.dropped + self.rejected)


@dataclass
class MutationResult:
    """What a caller sees after a local-first mutation."""

    ok: bool
    message: str
    synced: bool = False


@dataclass
class LoginResult:
    ok: bool
    is_admin: bool = False
    plans: dict[str, list[str]] = field(default_factory=dict)
    message: str | None = None


class SyncEngine:
    """Orchestrates the local store and the remote gateway.

    Replay is single-flight: a trigger that arrives while a pass is running
    is coalesced into one extra pass after the current one finishes.
    """

    def __init__(
        self,
        store: LocalStore,
        gateway: RemoteGateway,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the sync engine.

        Args:
            store: Local cache to mutate and replay from.
            gateway: Remote datastore gateway.
            max_attempts: Failed deliveries after which an item is dropped.
            clock: Source of the current time.
        """
        self.store = store
        self.gateway = gateway
        self.max_attempts = max_attempts
        self._clock = clock
        self._replaying = False
        self._rerun = False
        self._tasks: set[asyncio.Task] = set()
        self.dropped_items: list[SyncQueueItem] = []

        gateway.add_listener(self._on_connectivity_change)

    # ==================== Replay triggers ====================

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            logger.info("Back online, replaying sync queue")
            self._schedule_replay()
        else:
            logger.info("Gone offline, changes will be queued")

    def _schedule_replay(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, replay waits for the next trigger")
            return

        task = loop.create_task(self.replay())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def start(self) -> SyncResult:
        """Replay anything left over from a previous run."""
        return await self.replay()

    async def sync_loop(
        self,
        interval_seconds: int = 300,
        stop_event: asyncio.Event | None = None,
        probe: bool = False,
    ) -> None:
        """Replay the queue on a fixed interval until stopped.

        Args:
            interval_seconds: Seconds between passes.
            stop_event: Event to signal loop should stop.
            probe: Check reachability before each pass while offline, for
                hosts without their own connectivity events.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                if probe and not self.gateway.is_online:
                    await self.gateway.probe()
                result = await self.replay()
                if result.status not in (SyncStatus.OFFLINE, SyncStatus.SKIPPED):
                    logger.info(
                        f"Sync: {result.status.value}, settled={result.settled}, "
                        f"retried={result.retried}, dropped={len(result.dropped)}"
                    )
            except Exception as e:
                logger.error(f"Sync loop error: {e}")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(interval_seconds)

        logger.info("Sync loop stopped")

    # ==================== Queue replay ====================

    async def replay(self) -> SyncResult:
        """Replay the whole queue in order.

        Returns:
            SyncResult for the pass (or passes, when triggers were coalesced).
        """
        if not self.gateway.is_online:
            return SyncResult(status=SyncStatus.OFFLINE)

        if self._replaying:
            self._rerun = True
            logger.debug("Replay already in progress, coalescing trigger")
            return SyncResult(status=SyncStatus.SKIPPED)

        self._replaying = True
        result = SyncResult(status=SyncStatus.SUCCESS)
        try:
            await self._replay_pass(result)
            while self._rerun and self.gateway.is_online:
                self._rerun = False
                await self._replay_pass(result)
        finally:
            self._replaying = False
            self._rerun = False

        if result.retried or result.dropped or result.rejected or self.store.queue_length:
            result.status = SyncStatus.PARTIAL
        return result

    async def _replay_pass(self, result: SyncResult) -> None:
        queue = self.store.get_sync_queue()
        if queue:
            logger.info(f"Processing {len(queue)} queued operations")

        for item in queue:
            if not self.gateway.is_online:
                logger.info("Went offline during replay, stopping pass")
                break
            await self._process_item(item, result)

        now = self._clock()
        self.store.set_last_sync(now.isoformat())
        result.timestamp = now

    async def _process_item(self, item: SyncQueueItem, result: SyncResult) -> None:
        try:
            await self._dispatch(item)
        except RemoteUnavailable as e:
            attempts = item.attempts + 1
            if attempts >= self.max_attempts:
                item.attempts = attempts
                self.store.dequeue(item.id)
                self.dropped_items.append(item)
                result.dropped.append(item)
                logger.warning(f"{QueueExhausted(item)}: {e.last_error or e}")
            else:
                self.store.mark_attempt(item.id, attempts)
                result.retried += 1
                logger.debug(f"Item {item.id} failed, attempt {attempts}/{self.max_attempts}")
        except RemoteRejected as e:
            if item.action is SyncAction.USER_UPDATE and e.status_code == 409:
                # The user already exists remotely, which is the state we wanted.
                self.store.dequeue(item.id)
                result.settled += 1
                return

            self.store.dequeue(item.id)
            result.rejected.append(item)
            logger.error(f"Server rejected {item.action} item {item.id}: {e.message}")
        else:
            self.store.dequeue(item.id)
            result.settled += 1
            logger.debug(f"Settled {item.action} item {item.id}")

    async def _dispatch(self, item: SyncQueueItem) -> None:
        """Send one queued item to the matching remote call."""
        match item.payload:
            case UserUpdatePayload(name=name, password=password, is_admin=is_admin):
                await self.gateway.add_user(name, password, is_admin)
            case UserDeletePayload(name=name):
                await self.gateway.delete_user(name)
            case PlanUpdatePayload(week_id=week_id, user_name=user_name, locations=locations):
                await self.gateway.set_plan(week_id, user_name, list(locations))
            case CustomLocationPayload(
                user_name=user_name, week_id=week_id, day_date=day_date, location=location
            ):
                await self.gateway.add_custom_location(user_name, week_id, day_date, location)
            case AdminOverridePayload(admin_name=admin_name, override_week_start=week_start):
                await self.gateway.set_override(admin_name, week_start)
            case AdminOverrideClearPayload():
                await self.gateway.clear_override()
            case _:
                logger.warning(
                    f"Cannot deliver {item.action} item {item.id} "
                    f"(unknown action or malformed payload), dropping it"
                )

    def requeue_dropped(self) -> int:
        """Put items dropped this session back on the queue for another try."""
        count = 0
        while self.dropped_items:
            self.store.requeue(self.dropped_items.pop(0))
            count += 1
        if count:
            logger.info(f"Requeued {count} dropped items")
        return count

    # ==================== Mutations ====================

    async def _deliver(self, item: SyncQueueItem, label: str) -> MutationResult:
        """Try to send a freshly queued item right away, in queue order."""
        queued = MutationResult(ok=True, message=f"{label} locally. Will sync when online.")
        if not self.gateway.is_online:
            return queued

        try:
            result = await self.replay()
        except StorageError as e:
            logger.error(f"Could not update sync queue after {label.lower()}: {e}")
            return queued

        if result.touched(item.id):
            return MutationResult(
                ok=True,
                message=f"{label} locally. The server did not accept the change.",
            )
        if self.store.get_queue_item(item.id) is not None:
            return queued
        return MutationResult(ok=True, message=f"{label}.", synced=True)

    async def add_user(self, name: str, password: str, is_admin: bool = False) -> MutationResult:
        """Add or replace a user.

        Raises:
            ValueError: If the name is empty or the password is not 4 digits.
            StorageError: If the local write failed.
        """
        if not name or not name.strip():
            raise ValueError("User name must not be empty")
        if not is_valid_password(password):
            raise ValueError("Password must be 4 digits")

        item = self.store.set_user(name, {"password": password, "isAdmin": is_admin})
        return await self._deliver(item, "User saved")

    async def delete_user(self, name: str) -> MutationResult:
        item = self.store.remove_user(name)
        return await self._deliver(item, "User removed")

    async def set_plan(self, week_id: str, user_name: str, locations: Sequence[str]) -> MutationResult:
        item = self.store.set_plan(week_id, user_name, locations)
        return await self._deliver(item, "Plan saved")

    async def add_custom_location(
        self, user_name: str, week_id: str, day_date: str, location: str
    ) -> MutationResult:
        item = self.store.add_custom_location(user_name, week_id, day_date, location)
        return await self._deliver(item, "Custom location added")

    async def set_admin_override(self, admin_name: str, week_start: str) -> MutationResult:
        item = self.store.set_admin_override(admin_name, week_start)
        return await self._deliver(item, "Override set")

    async def clear_admin_override(self) -> MutationResult:
        item = self.store.clear_admin_override()
        return await self._deliver(item, "Override cleared")

    # ==================== Reads ====================

    def _local_user_list(self) -> list[dict[str, Any]]:
        return [
            {"name": name, "isAdmin": bool(data.get("isAdmin", False))}
            for name, data in self.store.get_users().items()
        ]

    async def get_users(self) -> list[dict[str, Any]]:
        """List users, from the server when reachable, else from the cache.

        Server users unknown to the cache are listed but not cached.
        """
        if self.gateway.is_online:
            try:
                remote_users = await self.gateway.list_users()
                self.store.merge_remote_users(remote_users)
            except (RemoteError, StorageError) as e:
                logger.warning(f"Failed to refresh users, using local cache: {e}")
            else:
                return [
                    {"name": user["name"], "isAdmin": bool(user.get("isAdmin", False))}
                    for user in remote_users
                    if user.get("name")
                ]

        return self._local_user_list()

    async def get_plans(self, week_id: str) -> dict[str, list[str]]:
        """Plans for a week, refreshing from the server when possible."""
        if self.gateway.is_online:
            try:
                remote_plans = await self.gateway.get_plans(week_id)
                self.store.merge_remote_plans(week_id, remote_plans)
            except (RemoteError, StorageError) as e:
                logger.warning(f"Failed to refresh plans for {week_id}, using local cache: {e}")

        return self.store.get_plans_for_week(week_id)

    async def get_admin_override(self) -> dict[str, Any] | None:
        if self.gateway.is_online:
            try:
                remote_override = await self.gateway.get_override()
                self.store.apply_remote_override(remote_override)
            except (RemoteError, StorageError) as e:
                logger.warning(f"Failed to refresh admin override, using local cache: {e}")

        return self.store.get_admin_override()

    async def login(self, name: str, password: str) -> LoginResult:
        """Check credentials locally, then confirm with the server if online."""
        local_user = self.store.get_user(name)
        if not local_user or local_user.get("password") != password:
            return LoginResult(ok=False, message="Invalid name or password")

        week_id = compute_week(self._clock()).week_id
        is_admin = bool(local_user.get("isAdmin", False))

        if self.gateway.is_online:
            try:
                response = await self.gateway.login(name, password)
            except RemoteError as e:
                logger.warning(f"Server login failed, using local auth: {e}")
            else:
                is_admin = bool(response.get("isAdmin", is_admin))
                server_plans = response.get("plansForCurrentWeek") or {}
                try:
                    self.store.merge_remote_plans(week_id, server_plans)
                except StorageError as e:
                    logger.warning(f"Could not cache server plans after login: {e}")

        return LoginResult(
            ok=True,
            is_admin=is_admin,
            plans=self.store.get_plans_for_week(week_id),
        )

    async def reveal_password(self, name: str) -> str | None:
        """Fetch a user's password from the server, falling back to the cache."""
        if self.gateway.is_online:
            try:
                return await self.gateway.decrypt_password(name)
            except RemoteError as e:
                logger.warning(f"Failed to decrypt password for {name}: {e}")

        local_user = self.store.get_user(name)
        return local_user.get("password") if local_user else None

    def get_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with connectivity, queue and storage statistics.
        """
        storage = self.store.get_storage_info()
        return {
            "online": self.gateway.is_online,
            "replaying": self._replaying,
            "pending_items": self.store.queue_length,
            "dropped_items": len(self.dropped_items),
            "last_sync": self.store.get_last_sync(),
            "storage_used_kb": storage["size_in_kb"],
        }
