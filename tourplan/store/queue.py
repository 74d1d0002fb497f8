"""Durable records of local mutations awaiting delivery to the remote store.

Each queue item pairs a ``SyncAction`` tag with the payload variant for that
action. Items are stored inside the cache document as plain dicts using the
same camelCase keys the remote contract uses.
"""

import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union


class SyncAction(str, Enum):
    """Kinds of mutation that have a remote counterpart."""

    USER_UPDATE = "user_update"
    USER_DELETE = "user_delete"
    PLAN_UPDATE = "plan_update"
    CUSTOM_LOCATION_ADD = "custom_location_add"
    ADMIN_OVERRIDE = "admin_override"
    ADMIN_OVERRIDE_CLEAR = "admin_override_clear"


@dataclass(frozen=True)
class UserUpdatePayload:
    name: str
    password: str
    is_admin: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "userData": {"password": self.password, "isAdmin": self.is_admin},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserUpdatePayload":
        user_data = data.get("userData") or {}
        return cls(
            name=data["name"],
            password=str(user_data.get("password", "")),
            is_admin=bool(user_data.get("isAdmin", False)),
        )


@dataclass(frozen=True)
class UserDeletePayload:
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserDeletePayload":
        return cls(name=data["name"])


@dataclass(frozen=True)
class PlanUpdatePayload:
    week_id: str
    user_name: str
    locations: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "weekStartId": self.week_id,
            "userName": self.user_name,
            "locations": list(self.locations),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanUpdatePayload":
        return cls(
            week_id=data["weekStartId"],
            user_name=data["userName"],
            locations=tuple(data["locations"]),
        )


@dataclass(frozen=True)
class CustomLocationPayload:
    user_name: str
    week_id: str
    day_date: str
    location: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "userName": self.user_name,
            "weekStartId": self.week_id,
            "dayDate": self.day_date,
            "location": self.location,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CustomLocationPayload":
        return cls(
            user_name=data["userName"],
            week_id=data["weekStartId"],
            day_date=data["dayDate"],
            location=data["location"],
        )


@dataclass(frozen=True)
class AdminOverridePayload:
    admin_name: str
    override_week_start: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "adminName": self.admin_name,
            "overrideWeekStart": self.override_week_start,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AdminOverridePayload":
        return cls(
            admin_name=data["adminName"],
            override_week_start=data["overrideWeekStart"],
        )


@dataclass(frozen=True)
class AdminOverrideClearPayload:
    def to_dict(self) -> dict[str, Any]:
        return {}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AdminOverrideClearPayload":
        return cls()


Payload = Union[
    UserUpdatePayload,
    UserDeletePayload,
    PlanUpdatePayload,
    CustomLocationPayload,
    AdminOverridePayload,
    AdminOverrideClearPayload,
]

PAYLOAD_TYPES: dict[SyncAction, type] = {
    SyncAction.USER_UPDATE: UserUpdatePayload,
    SyncAction.USER_DELETE: UserDeletePayload,
    SyncAction.PLAN_UPDATE: PlanUpdatePayload,
    SyncAction.CUSTOM_LOCATION_ADD: CustomLocationPayload,
    SyncAction.ADMIN_OVERRIDE: AdminOverridePayload,
    SyncAction.ADMIN_OVERRIDE_CLEAR: AdminOverrideClearPayload,
}


def _raw_payload(raw: Any) -> dict[str, Any]:
    return dict(raw) if isinstance(raw, dict) else {"value": raw}


def new_item_id() -> str:
    """Generate a unique, roughly time-ordered queue item id."""
    return f"{time.time_ns()}-{uuid.uuid4().hex[:8]}"


@dataclass
class SyncQueueItem:
    """A single pending mutation in the sync queue.

    ``action`` is a plain string and ``payload`` a raw dict when the item was
    written by a newer client with an action this version does not know.
    ``payload`` is also a raw dict when a known action carries a payload that
    cannot be parsed.
    """

    id: str
    action: SyncAction | str
    payload: Payload | dict[str, Any]
    timestamp: str
    attempts: int = 0

    @property
    def is_known(self) -> bool:
        """Whether this version can deliver the item."""
        return isinstance(self.action, SyncAction) and not isinstance(self.payload, dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        action = self.action.value if isinstance(self.action, SyncAction) else self.action
        payload = self.payload if isinstance(self.payload, dict) else self.payload.to_dict()
        return {
            "id": self.id,
            "action": action,
            "payload": dict(payload),
            "timestamp": self.timestamp,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncQueueItem":
        """Create from a stored dictionary."""
        raw_payload = data.get("payload") or {}
        try:
            action: SyncAction | str = SyncAction(data["action"])
        except ValueError:
            action = data["action"]
            payload: Payload | dict[str, Any] = _raw_payload(raw_payload)
        else:
            try:
                payload = PAYLOAD_TYPES[action].from_dict(raw_payload)
            except (KeyError, TypeError, AttributeError):
                # Kept raw so replay drops it instead of failing every pass
                payload = _raw_payload(raw_payload)

        return cls(
            id=str(data["id"]),
            action=action,
            payload=payload,
            timestamp=data.get("timestamp", ""),
            attempts=int(data.get("attempts", 0)),
        )
