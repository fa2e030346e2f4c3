"""Per-room, per-client synchronization state."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field

from roomsync.core.types import RoomSnapshot, Track


class PendingUpdates:
    """Bounded, time-evicting set of update IDs we sent and still expect to see echoed.

    IDs older than ``ttl_ms`` are purged even if never matched, and the oldest
    entries are dropped once ``limit`` is exceeded.
    """

    def __init__(self, ttl_ms: int = 10_000, limit: int = 64) -> None:
        self._ttl_ms = ttl_ms
        self._limit = limit
        self._entries: OrderedDict[str, int] = OrderedDict()

    def add(self, update_id: str, now_ms: int) -> None:
        self._entries[update_id] = now_ms
        self._entries.move_to_end(update_id)
        self.purge(now_ms)

    def discard(self, update_id: str | None, now_ms: int) -> bool:
        """Consume ``update_id`` if pending. Returns True at most once per ID."""
        self.purge(now_ms)
        if update_id is None:
            return False
        return self._entries.pop(update_id, None) is not None

    def purge(self, now_ms: int) -> None:
        while self._entries:
            oldest_id, sent_at = next(iter(self._entries.items()))
            if now_ms - sent_at > self._ttl_ms or len(self._entries) > self._limit:
                self._entries.pop(oldest_id)
            else:
                break

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, update_id: object) -> bool:
        return update_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class LastSynced:
    current_track: Track | None = None
    is_playing: bool = False
    current_position: float = 0.0
    last_sync_time: int = 0

    @classmethod
    def from_snapshot(cls, snapshot: RoomSnapshot, last_sync_time: int) -> LastSynced:
        return cls(
            current_track=snapshot.current_track,
            is_playing=snapshot.is_playing,
            current_position=snapshot.current_position,
            last_sync_time=last_sync_time,
        )


@dataclass
class SyncState:
    """Everything a session remembers about one room it listens to."""

    room_id: str
    our_updates: PendingUpdates = field(default_factory=PendingUpdates)
    last_synced: LastSynced = field(default_factory=LastSynced)
    last_delivered_at: int | None = None
    first_snapshot: bool = True
