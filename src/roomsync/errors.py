"""Error taxonomy for room synchronization."""

from __future__ import annotations


class RoomSyncError(Exception):
    """Base class for all roomsync errors."""


class InvalidArgument(RoomSyncError, ValueError):
    """Caller error: missing room id, participant id or track url. Never retried."""


class StoreUnavailable(RoomSyncError, ConnectionError):
    """The document store could not be reached. Transient."""


class SubscriptionLost(RoomSyncError, ConnectionError):
    """A room subscription exhausted its retry budget and must be re-established."""

    def __init__(self, room_id: str, attempts: int) -> None:
        super().__init__(f"subscription to room {room_id!r} lost after {attempts} attempts")
        self.room_id = room_id
        self.attempts = attempts


class StaleWrite(RoomSyncError, LookupError):
    """A write targeted a room that no longer exists; re-join and retry."""

    def __init__(self, room_id: str) -> None:
        super().__init__(f"room {room_id!r} does not exist")
        self.room_id = room_id
