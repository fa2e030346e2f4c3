"""ThrottleGate: minimum interval between outbound writes per room and update kind."""

from __future__ import annotations

import logging

from roomsync.config import SyncConfig
from roomsync.core.types import RoomID, UpdateKind

logger = logging.getLogger(__name__)


class ThrottleGate:
    """Drops writes that arrive before their kind's interval has elapsed.

    Pauses are never throttled. Accepted playback writes also refresh the
    position timestamp since they carry the position themselves.
    """

    def __init__(self, config: SyncConfig | None = None) -> None:
        config = config or SyncConfig()
        self._intervals: dict[UpdateKind, int] = {
            UpdateKind.TRACK: config.track_interval_ms,
            UpdateKind.PLAYBACK: config.playback_interval_ms,
            UpdateKind.POSITION: config.position_interval_ms,
        }
        self._last: dict[tuple[RoomID, UpdateKind], int] = {}

    def remaining_ms(self, room_id: RoomID, kind: UpdateKind, now_ms: int) -> int:
        last = self._last.get((room_id, kind))
        if last is None:
            return 0
        return max(0, self._intervals[kind] - (now_ms - last))

    def allow(self, room_id: RoomID, kind: UpdateKind, now_ms: int, *, is_pause: bool = False) -> bool:
        """Return True and record the write if it may go out now."""
        if not is_pause and self.remaining_ms(room_id, kind, now_ms) > 0:
            logger.debug("throttling %s update for room %s", kind.name.lower(), room_id)
            return False
        self._last[(room_id, kind)] = now_ms
        if kind is UpdateKind.PLAYBACK:
            self._last[(room_id, UpdateKind.POSITION)] = now_ms
        return True

    def release(self, room_id: RoomID, kind: UpdateKind, taken_at_ms: int) -> None:
        """Give back a slot recorded by ``allow`` at ``taken_at_ms`` whose write failed."""
        kinds = (kind, UpdateKind.POSITION) if kind is UpdateKind.PLAYBACK else (kind,)
        for k in kinds:
            if self._last.get((room_id, k)) == taken_at_ms:
                del self._last[(room_id, k)]

    def forget(self, room_id: RoomID) -> None:
        for key in [k for k in self._last if k[0] == room_id]:
            del self._last[key]

    def clear(self) -> None:
        self._last.clear()
