"""Error taxonomy for the tour plan cache and sync engine."""

from typing import Any


class TourplanError(Exception):
    """Base class for all tourplan errors."""


class StorageError(TourplanError):
    """Local persistence failed; the mutation was rejected and state kept."""


class RemoteError(TourplanError):
    """Base class for failures talking to the remote datastore."""


class RemoteUnavailable(RemoteError):
    """The request could not be delivered after exhausting retries."""

    def __init__(self, message: str, last_error: BaseException | str | None = None):
        super().__init__(message)
        self.last_error = last_error


class RemoteRejected(RemoteError):
    """The server understood the request and refused it. Never retried."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class QueueExhausted(TourplanError):
    """A queued mutation was dropped after reaching the attempt limit."""

    def __init__(self, item: Any):
        super().__init__(
            f"Dropped {item.action} item {item.id} after {item.attempts} attempts"
        )
        self.item = item
