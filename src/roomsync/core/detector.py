"""ChangeDetector: decides whether a room notification is worth surfacing."""

from __future__ import annotations

import logging
from enum import Enum, auto

from roomsync.config import SyncConfig
from roomsync.core.state import LastSynced, SyncState
from roomsync.core.types import RoomSnapshot

logger = logging.getLogger(__name__)


class Decision(Enum):
    IGNORE = auto()
    DELIVER_NOW = auto()
    DEFER = auto()


class ChangeDetector:
    """Filters self-echoes and noise out of the raw snapshot stream for one room."""

    def __init__(self, state: SyncState, config: SyncConfig | None = None) -> None:
        config = config or SyncConfig()
        self._state = state
        self._drift_threshold = config.drift_threshold_s
        self._position_gap_ms = config.position_sync_gap_ms
        self._debounce_ms = config.debounce_ms

    @property
    def state(self) -> SyncState:
        return self._state

    def is_echo(self, snapshot: RoomSnapshot | None, now_ms: int) -> bool:
        """Consume the snapshot's update ID if we sent it."""
        if snapshot is None or not self._state.our_updates.discard(snapshot.update_id, now_ms):
            return False
        # Our own write becomes the baseline so a lingering updateId can't resurface it later.
        last = self._state.last_synced
        self._state.last_synced = LastSynced(
            current_track=snapshot.current_track,
            is_playing=snapshot.is_playing,
            current_position=snapshot.current_position,
            last_sync_time=last.last_sync_time,
        )
        logger.debug("skipping our own update %s in room %s", snapshot.update_id, snapshot.room_id)
        return True

    def is_meaningful(self, snapshot: RoomSnapshot, now_ms: int) -> bool:
        last = self._state.last_synced
        old_url = last.current_track.url if last.current_track else None
        new_url = snapshot.track_url
        track_changed = old_url != new_url and (old_url is not None or new_url is not None)
        playing_changed = snapshot.is_playing != last.is_playing
        position_diff = abs(snapshot.current_position - last.current_position)
        position_jumped = (
            position_diff > self._drift_threshold
            and now_ms - last.last_sync_time > self._position_gap_ms
        )
        if track_changed or playing_changed or position_jumped:
            logger.debug(
                "meaningful change in room %s (track=%s playing=%s position=%s)",
                snapshot.room_id,
                track_changed,
                playing_changed,
                position_jumped,
            )
            return True
        logger.debug(
            "skipping non-meaningful update for room %s (position diff %.2fs)",
            snapshot.room_id,
            position_diff,
        )
        return False

    def evaluate(self, snapshot: RoomSnapshot | None, now_ms: int) -> Decision:
        """Classify one raw notification.

        A ``None`` snapshot means the room no longer exists and is always delivered.
        """
        if snapshot is None:
            self._state.first_snapshot = False
            return Decision.DELIVER_NOW

        first = self._state.first_snapshot
        self._state.first_snapshot = False

        if self.is_echo(snapshot, now_ms):
            return Decision.IGNORE

        if first and snapshot.current_track is None and len(snapshot.participants) <= 1:
            logger.debug("ignoring initial empty snapshot for room %s", snapshot.room_id)
            return Decision.IGNORE

        if not self.is_meaningful(snapshot, now_ms):
            return Decision.IGNORE

        last_delivered = self._state.last_delivered_at
        if last_delivered is not None and now_ms - last_delivered < self._debounce_ms:
            logger.debug("debouncing update for room %s", snapshot.room_id)
            return Decision.DEFER
        return Decision.DELIVER_NOW

    def mark_delivered(self, snapshot: RoomSnapshot | None, now_ms: int) -> None:
        """Record a delivery. Must run before the caller's callback."""
        self._state.last_delivered_at = now_ms
        if snapshot is not None:
            self._state.last_synced = LastSynced.from_snapshot(snapshot, now_ms)
