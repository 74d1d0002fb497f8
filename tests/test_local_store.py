"""Tests for the LocalStore cache document."""

import json
import pytest
from datetime import datetime, timezone
from unittest.mock import patch

from tourplan.config import DEFAULT_SEED_USERS
from tourplan.errors import StorageError
from tourplan.store import (
    LocalStore,
    SQLiteBackend,
    SyncAction,
    WEEKLY_OFF,
    display_locations,
)
from tourplan.store.queue import PlanUpdatePayload, UserUpdatePayload

WEEK = "20250811"
PLAN = ["Amritsar", "Jalandhar", "", "", "Leave", "", ""]


def fixed_clock():
    return datetime(2025, 8, 13, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def backend():
    """Create an in-memory SQLite backend."""
    backend = SQLiteBackend(":memory:")
    backend.connect()
    yield backend
    backend.close()


@pytest.fixture
def store(backend):
    """Create a LocalStore seeded with the default users."""
    return LocalStore(backend, seed_users=DEFAULT_SEED_USERS, clock=fixed_clock)


class TestDocumentLifecycle:
    """Tests for creating and loading the cache document."""

    def test_new_document_has_defaults(self, store):
        """Test a fresh store has every key and the seed users."""
        doc = store.export_data()

        assert set(doc) == {
            "users", "plans", "customLocations", "adminOverride", "syncQueue", "lastSync",
        }
        assert doc["users"]["Sudhir Kumar"] == {"password": "9211", "isAdmin": True}
        assert doc["plans"] == {}
        assert doc["syncQueue"] == []
        assert doc["adminOverride"] is None
        assert doc["lastSync"] is None

    def test_seeding_does_not_enqueue(self, store):
        """Test seed users are not sent to the remote."""
        assert store.queue_length == 0

    def test_document_persisted_on_creation(self, backend, store):
        """Test the new document is written to the backend."""
        assert backend.load()["users"].keys() == DEFAULT_SEED_USERS.keys()

    def test_backfill_keeps_existing_data(self, backend):
        """Test missing keys are added without touching existing ones."""
        backend.save({
            "users": {"A": {"password": "1234", "isAdmin": False}},
            "plans": {WEEK: {"A": PLAN}},
        })

        store = LocalStore(backend, seed_users=DEFAULT_SEED_USERS)
        doc = store.export_data()

        assert doc["users"] == {"A": {"password": "1234", "isAdmin": False}}
        assert doc["plans"] == {WEEK: {"A": PLAN}}
        assert doc["syncQueue"] == []
        assert doc["customLocations"] == {}
        assert "lastSync" in backend.load()

    def test_empty_document_reinitialized(self, backend):
        """Test an empty stored document is replaced with defaults."""
        backend.save({})

        store = LocalStore(backend, seed_users=DEFAULT_SEED_USERS)

        assert "Sahil Sharma" in store.get_users()

    def test_state_survives_reload(self, backend, store):
        """Test a second store over the same backend sees earlier writes."""
        store.set_plan(WEEK, "Sahil Sharma", PLAN)

        reloaded = LocalStore(backend, seed_users={})

        assert reloaded.get_plan(WEEK, "Sahil Sharma") == PLAN
        assert reloaded.queue_length == 1

    def test_corrupt_row_falls_back_to_defaults(self, backend):
        """Test unreadable JSON is treated as no document."""
        backend._conn.execute(
            "INSERT INTO cache_documents (key, value, updated_at) VALUES (?, ?, ?)",
            (backend.key, "{not json", "now"),
        )
        backend._conn.commit()

        store = LocalStore(backend, seed_users={"A": {"password": "1111", "isAdmin": False}})

        assert store.get_users() == {"A": {"password": "1111", "isAdmin": False}}


class TestGenericAccess:
    """Tests for read/write by path."""

    def test_read_dotted_path(self, store):
        assert store.read("users.Sudhir Kumar.isAdmin") is True

    def test_read_missing_returns_default(self, store):
        assert store.read("plans.19990101", {}) == {}
        assert store.read(("users", "Nobody", "password")) is None

    def test_write_creates_intermediate_objects(self, store):
        """Test writing a nested path creates parents."""
        store.write(("plans", WEEK, "A"), PLAN)

        assert store.get_plan(WEEK, "A") == PLAN

    def test_write_does_not_enqueue(self, store):
        store.write("lastSync", "2025-08-13T00:00:00+00:00")

        assert store.queue_length == 0
        assert store.get_last_sync() == "2025-08-13T00:00:00+00:00"

    def test_read_returns_copy(self, store):
        """Test mutating a read value does not change the store."""
        users = store.get_users()
        users["Sahil Sharma"]["password"] = "0000"

        assert store.get_user("Sahil Sharma")["password"] == "8371"

    def test_write_empty_path(self, store):
        with pytest.raises(ValueError):
            store.write("", 1)


class TestMutations:
    """Tests for mutations and their queue items."""

    def test_set_plan_enqueues(self, store):
        """Test setting a plan writes it and queues a plan_update."""
        item = store.set_plan(WEEK, "Sahil Sharma", PLAN)

        assert store.get_plans_for_week(WEEK) == {"Sahil Sharma": PLAN}
        queue = store.get_sync_queue()
        assert len(queue) == 1
        assert queue[0].id == item.id
        assert queue[0].action is SyncAction.PLAN_UPDATE
        assert queue[0].attempts == 0
        assert queue[0].payload == PlanUpdatePayload(WEEK, "Sahil Sharma", tuple(PLAN))

    def test_set_plan_stored_payload_format(self, store):
        """Test queue items are stored with the remote's field names."""
        store.set_plan(WEEK, "Sahil Sharma", PLAN)

        raw = store.read("syncQueue")[0]
        assert raw["action"] == "plan_update"
        assert raw["payload"] == {"weekStartId": WEEK, "userName": "Sahil Sharma", "locations": PLAN}
        assert raw["timestamp"] == fixed_clock().isoformat()

    def test_set_plan_overwrites(self, store):
        store.set_plan(WEEK, "A", PLAN)
        store.set_plan(WEEK, "A", ["X"] * 7)

        assert store.get_plan(WEEK, "A") == ["X"] * 7
        assert store.queue_length == 2

    @pytest.mark.parametrize("locations", [[], ["X"] * 6, ["X"] * 8, "ABCDEFG"])
    def test_set_plan_requires_seven(self, store, locations):
        """Test plans of the wrong length are rejected with nothing queued."""
        with pytest.raises(ValueError):
            store.set_plan(WEEK, "A", locations)

        assert store.get_plan(WEEK, "A") is None
        assert store.queue_length == 0

    def test_sunday_not_defaulted_in_storage(self, store):
        """Test an empty Sunday is stored empty."""
        store.set_plan(WEEK, "A", ["X", "", "", "", "", "", ""])

        assert store.get_plan(WEEK, "A")[6] == ""

    def test_set_user_replaces(self, store):
        """Test users are replaced whole and queued."""
        store.set_user("Sahil Sharma", {"password": "1111", "isAdmin": True})

        assert store.get_user("Sahil Sharma") == {"password": "1111", "isAdmin": True}
        item = store.get_sync_queue()[0]
        assert item.action is SyncAction.USER_UPDATE
        assert item.payload == UserUpdatePayload("Sahil Sharma", "1111", True)

    def test_cascade_delete(self, store):
        """Test removing a user removes their plans and custom locations."""
        store.set_plan("20250804", "Vijay Kumar", PLAN)
        store.set_plan(WEEK, "Vijay Kumar", PLAN)
        store.set_plan(WEEK, "Sunil Suri", PLAN)
        store.add_custom_location("Vijay Kumar", WEEK, "2025-08-12", "Phagwara")
        store.add_custom_location("Sunil Suri", WEEK, "2025-08-12", "Moga")

        store.remove_user("Vijay Kumar")

        assert "Vijay Kumar" not in store.get_users()
        assert "Vijay Kumar" not in store.get_plans_for_week("20250804")
        assert "Vijay Kumar" not in store.get_plans_for_week(WEEK)
        assert store.get_custom_locations("Vijay Kumar") == {}
        assert store.get_plan(WEEK, "Sunil Suri") == PLAN
        assert store.get_custom_locations("Sunil Suri") == {WEEK: {"2025-08-12": "Moga"}}
        assert store.get_sync_queue()[-1].action is SyncAction.USER_DELETE

    def test_cascade_delete_single_write(self, backend, store):
        """Test the cascade is persisted in one save."""
        store.set_plan(WEEK, "Vijay Kumar", PLAN)

        with patch.object(backend, "save", wraps=backend.save) as save:
            store.remove_user("Vijay Kumar")

        assert save.call_count == 1

    def test_add_custom_location(self, store):
        store.add_custom_location("A", WEEK, "2025-08-12", "Phagwara")
        store.add_custom_location("A", WEEK, "2025-08-13", "Moga")

        assert store.get_custom_locations("A") == {
            WEEK: {"2025-08-12": "Phagwara", "2025-08-13": "Moga"}
        }
        assert [i.action for i in store.get_sync_queue()] == [
            SyncAction.CUSTOM_LOCATION_ADD,
            SyncAction.CUSTOM_LOCATION_ADD,
        ]

    def test_admin_override(self, store):
        """Test setting and clearing the admin override."""
        store.set_admin_override("Sudhir Kumar", "2025-08-18")

        assert store.get_admin_override() == {
            "adminName": "Sudhir Kumar",
            "overrideWeekStart": "2025-08-18",
            "timestamp": fixed_clock().isoformat(),
        }

        store.clear_admin_override()

        assert store.get_admin_override() is None
        assert [i.action for i in store.get_sync_queue()] == [
            SyncAction.ADMIN_OVERRIDE,
            SyncAction.ADMIN_OVERRIDE_CLEAR,
        ]


class TestStorageFailures:
    """Tests for rejected writes."""

    def test_backend_failure_keeps_state(self, backend, store):
        """Test a failed save leaves the document and queue unchanged."""
        store.set_plan(WEEK, "A", PLAN)
        before = store.export_data()

        with patch.object(backend, "save", side_effect=StorageError("disk full")):
            with pytest.raises(StorageError):
                store.set_plan(WEEK, "A", ["X"] * 7)
            with pytest.raises(StorageError):
                store.remove_user("Sahil Sharma")

        assert store.export_data() == before
        assert store.get_plan(WEEK, "A") == PLAN
        assert store.queue_length == 1

    def test_quota_exceeded(self, backend, store):
        """Test a document over the quota is rejected."""
        backend.max_bytes = len(json.dumps(store.export_data())) + 10

        with pytest.raises(StorageError, match="quota"):
            store.set_plan(WEEK, "A", ["A very long location name"] * 7)

        assert store.get_plan(WEEK, "A") is None
        assert store.queue_length == 0

    def test_sqlite_error_becomes_storage_error(self, backend, store):
        """Test database errors surface as StorageError."""
        backend._conn.execute("DROP TABLE cache_documents")

        with pytest.raises(StorageError):
            store.set_plan(WEEK, "A", PLAN)

        assert store.get_plan(WEEK, "A") is None


class TestQueueLifecycle:
    """Tests for dequeue and attempt tracking."""

    def test_dequeue(self, store):
        first = store.set_plan(WEEK, "A", PLAN)
        second = store.set_plan(WEEK, "B", PLAN)

        assert store.dequeue(first.id) is True

        assert [i.id for i in store.get_sync_queue()] == [second.id]

    def test_dequeue_unknown(self, store):
        assert store.dequeue("missing") is False

    def test_mark_attempt(self, store):
        item = store.set_plan(WEEK, "A", PLAN)

        assert store.mark_attempt(item.id, 3) is True

        assert store.get_queue_item(item.id).attempts == 3

    def test_fifo_order(self, store):
        """Test items come back in insertion order."""
        ids = [
            store.set_user("A", {"password": "1234"}).id,
            store.set_plan(WEEK, "A", PLAN).id,
            store.remove_user("A").id,
        ]

        assert [i.id for i in store.get_sync_queue()] == ids

    def test_unique_ids(self, store):
        ids = {store.set_plan(WEEK, "A", PLAN).id for _ in range(50)}

        assert len(ids) == 50

    def test_unknown_action_preserved(self, store):
        """Test items from a newer client keep their raw action and payload."""
        store.write("syncQueue", [{
            "id": "1", "action": "plan_archive", "payload": {"weekStartId": WEEK},
            "timestamp": "t", "attempts": 0,
        }])

        item = store.get_sync_queue()[0]

        assert item.is_known is False
        assert item.action == "plan_archive"
        assert item.payload == {"weekStartId": WEEK}
        assert item.to_dict()["action"] == "plan_archive"

    def test_malformed_payload_kept_raw(self, store):
        """Test a known action with a broken payload still loads and merges."""
        store.write("syncQueue", [{
            "id": "1", "action": "plan_update", "payload": {"userName": "A"},
            "timestamp": "t", "attempts": 0,
        }])

        item = store.get_sync_queue()[0]

        assert item.action is SyncAction.PLAN_UPDATE
        assert item.is_known is False
        assert item.to_dict()["payload"] == {"userName": "A"}
        assert store.pending_keys()[SyncAction.PLAN_UPDATE] == set()
        assert store.merge_remote_plans(WEEK, {"A": PLAN}) == 1
        assert store.get_plan(WEEK, "A") == PLAN

    def test_requeue_resets_attempts(self, store):
        item = store.set_plan(WEEK, "A", PLAN)
        store.mark_attempt(item.id, 5)
        dropped = store.get_queue_item(item.id)
        store.dequeue(item.id)

        store.requeue(dropped)

        assert store.get_queue_item(item.id).attempts == 0

    def test_set_last_sync(self, store):
        store.set_last_sync()

        assert store.get_last_sync() == fixed_clock().isoformat()


class TestServerMerge:
    """Tests for merging server state without enqueuing."""

    def test_merge_users_server_wins_per_field(self, store):
        """Test present fields overwrite and absent fields are kept."""
        store.write("users.A", {"password": "1234", "isAdmin": False})

        store.merge_remote_users([{"name": "A", "isAdmin": True}])

        assert store.get_user("A") == {"password": "1234", "isAdmin": True}
        assert store.queue_length == 0

    def test_merge_users_ignores_unknown(self, store):
        """Test server-only users are not cached without a password."""
        merged = store.merge_remote_users([{"name": "New", "isAdmin": False}])

        assert merged == 0
        assert store.get_user("New") is None

    def test_merge_users_skips_pending(self, store):
        """Test a queued local change shadows the server value."""
        store.set_user("A", {"password": "1234", "isAdmin": False})
        store.remove_user("B")

        merged = store.merge_remote_users([
            {"name": "A", "isAdmin": True},
            {"name": "B", "isAdmin": False},
        ])

        assert merged == 0
        assert store.get_user("A")["isAdmin"] is False
        assert store.get_user("B") is None

    def test_merge_plans(self, store):
        merged = store.merge_remote_plans(WEEK, {"A": PLAN, "B": None, "C": ["X"] * 3})

        assert merged == 1
        assert store.get_plans_for_week(WEEK) == {"A": PLAN}
        assert store.queue_length == 0

    def test_merge_plans_skips_pending(self, store):
        store.set_plan(WEEK, "A", ["Local"] * 7)

        store.merge_remote_plans(WEEK, {"A": PLAN, "B": PLAN})

        assert store.get_plan(WEEK, "A") == ["Local"] * 7
        assert store.get_plan(WEEK, "B") == PLAN

    def test_apply_remote_override(self, store):
        assert store.apply_remote_override(
            {"adminName": "Sudhir Kumar", "overrideWeekStart": "2025-08-18"}
        )

        override = store.get_admin_override()
        assert override["overrideWeekStart"] == "2025-08-18"
        assert override["timestamp"] == fixed_clock().isoformat()

        assert store.apply_remote_override(None)
        assert store.get_admin_override() is None
        assert store.queue_length == 0

    def test_apply_remote_override_skips_pending(self, store):
        store.set_admin_override("Sudhir Kumar", "2025-08-18")

        assert store.apply_remote_override(None) is False
        assert store.get_admin_override() is not None


class TestMaintenance:
    """Tests for backup, restore and reset."""

    def test_export_import(self, backend, store):
        store.set_plan(WEEK, "A", PLAN)
        backup = store.export_data()
        other = LocalStore(SQLiteBackend(":memory:"), seed_users={})

        other.import_data(backup)

        assert other.export_data() == backup

    def test_import_backfills(self, store):
        store.import_data({"users": {}})

        assert store.get_users() == {}
        assert store.get_sync_queue() == []
        assert store.get_admin_override() is None

    def test_import_rejects_non_object(self, store):
        with pytest.raises(StorageError):
            store.import_data(["not", "a", "document"])

    def test_clear_all(self, store):
        store.set_plan(WEEK, "A", PLAN)

        store.clear_all()

        assert store.get_plans_for_week(WEEK) == {}
        assert store.queue_length == 0
        assert "Sudhir Kumar" in store.get_users()

    def test_storage_info(self, store):
        store.set_plan(WEEK, "A", PLAN)

        info = store.get_storage_info()

        assert info["size_in_bytes"] == len(json.dumps(store.export_data()).encode())
        assert info["item_count"] == 6
        assert info["queue_length"] == 1


class TestDisplayLocations:
    """Tests for render-time defaults."""

    def test_sunday_defaults_to_weekly_off(self):
        assert display_locations(["X", "", "", "", "", "", ""])[6] == WEEKLY_OFF

    def test_sunday_kept_when_set(self):
        assert display_locations(["", "", "", "", "", "", "Leave"])[6] == "Leave"

    def test_missing_plan(self):
        assert display_locations(None) == ["", "", "", "", "", "", WEEKLY_OFF]
