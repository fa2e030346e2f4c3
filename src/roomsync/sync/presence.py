"""PresenceMonitor: room membership, leader assignment and empty-room auto-pause."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable

from roomsync._util.ids import generate_update_id
from roomsync.core.types import ParticipantID, RoomID, RoomSnapshot
from roomsync.errors import RoomSyncError
from roomsync.sync.adapter import RoomStore

logger = logging.getLogger(__name__)


class PresenceState(Enum):
    EMPTY = auto()
    POPULATED = auto()
    LEADERLESS = auto()
    LED = auto()


def state_of(snapshot: RoomSnapshot | None) -> PresenceState:
    if snapshot is None or not snapshot.participants:
        return PresenceState.EMPTY
    if snapshot.leader is None:
        return PresenceState.POPULATED
    if snapshot.leader not in snapshot.participants:
        return PresenceState.LEADERLESS
    return PresenceState.LED


@dataclass
class RoomPresence:
    room_id: RoomID
    local_id: ParticipantID | None = None
    joined: bool = False
    state: PresenceState = PresenceState.EMPTY
    needs_pause: bool = False
    participants: tuple[ParticipantID, ...] = field(default_factory=tuple)


class PresenceMonitor:
    """Tracks membership for the rooms a session has joined.

    ``on_join``/``on_leave`` run the leader state machine against the store;
    ``handle`` processes notifications from the independent presence subscription.
    """

    def __init__(
        self,
        rooms: RoomStore,
        *,
        record_update: Callable[[RoomID, str], None] | None = None,
        on_leader_change: Callable[[RoomID, ParticipantID | None], Any] | None = None,
        on_room_empty: Callable[[RoomID], Any] | None = None,
    ) -> None:
        self._rooms = rooms
        self._record_update = record_update
        self._on_leader_change = on_leader_change
        self._on_room_empty = on_room_empty
        self._presence: dict[RoomID, RoomPresence] = {}

    def get(self, room_id: RoomID) -> RoomPresence | None:
        return self._presence.get(room_id)

    def _entry(self, room_id: RoomID) -> RoomPresence:
        if room_id not in self._presence:
            self._presence[room_id] = RoomPresence(room_id=room_id)
        return self._presence[room_id]

    def watch(self, room_id: RoomID) -> RoomPresence:
        """Track a room's membership without necessarily being a member."""
        return self._entry(room_id)

    async def _set_leader(self, room_id: RoomID, leader: ParticipantID | None) -> None:
        await self._rooms.write(room_id, {"leader": leader})
        logger.info("leader of room %s is now %s", room_id, leader)
        if self._on_leader_change is not None:
            self._on_leader_change(room_id, leader)

    async def on_join(self, room_id: RoomID, participant_id: ParticipantID, snapshot: RoomSnapshot) -> RoomSnapshot:
        """Mark the participant present and make it leader if the room has none."""
        entry = self._entry(room_id)
        entry.local_id = participant_id
        entry.joined = True
        entry.participants = snapshot.participants
        if state_of(snapshot) in (PresenceState.POPULATED, PresenceState.LEADERLESS):
            await self._set_leader(room_id, participant_id)
            snapshot = await self._rooms.read(room_id) or snapshot
        entry.state = state_of(snapshot)
        return snapshot

    async def on_leave(
        self,
        room_id: RoomID,
        participant_id: ParticipantID,
        snapshot: RoomSnapshot | None,
    ) -> bool:
        """Reassign the leader or, if the room emptied, force playback off.

        Returns False when the room still needs pausing; its entry is then
        kept with ``needs_pause`` set so ``handle`` retries on the next
        presence notification.
        """
        entry = self._presence.pop(room_id, None)
        if snapshot is None:
            return True
        remaining = [p for p in snapshot.participants if p != participant_id]
        if remaining:
            if snapshot.leader == participant_id or snapshot.leader not in remaining:
                try:
                    await self._set_leader(room_id, remaining[0])
                except RoomSyncError as exc:
                    logger.warning("leader handover in room %s failed: %s", room_id, exc)
            return True
        try:
            await self._pause_empty_room(room_id, clear_leader=snapshot.leader is not None)
        except RoomSyncError as exc:
            logger.warning("auto-pause of room %s failed, retrying on next update: %s", room_id, exc)
            entry = entry or RoomPresence(room_id=room_id)
            entry.local_id = None
            entry.joined = False
            entry.needs_pause = True
            entry.participants = ()
            self._presence[room_id] = entry
            return False
        return True

    async def _pause_empty_room(self, room_id: RoomID, *, clear_leader: bool = True) -> None:
        update_id = generate_update_id()
        if self._record_update is not None:
            self._record_update(room_id, update_id)
        partial: dict[str, Any] = {"isPlaying": False, "updateId": update_id}
        if clear_leader:
            partial["leader"] = None
        await self._rooms.write(room_id, partial)
        logger.info("room %s is empty, playback paused", room_id)
        if clear_leader and self._on_leader_change is not None:
            self._on_leader_change(room_id, None)
        if self._on_room_empty is not None:
            self._on_room_empty(room_id)

    def count(self, snapshot: RoomSnapshot) -> int:
        """Membership count, counting ourselves if joined but not yet visible in the store."""
        members = set(snapshot.participants)
        entry = self._presence.get(snapshot.room_id)
        if entry is not None and entry.joined and entry.local_id and entry.local_id not in members:
            return len(members) + 1
        return len(members)

    async def handle(self, snapshot: RoomSnapshot | None) -> None:
        """Process one presence notification."""
        if snapshot is None:
            return
        entry = self._presence.get(snapshot.room_id)
        if entry is None:
            return
        entry.participants = snapshot.participants
        entry.state = state_of(snapshot)
        if self.count(snapshot) > 0:
            entry.needs_pause = False
            return
        if not snapshot.is_playing and not entry.needs_pause:
            return
        entry.needs_pause = True
        try:
            await self._pause_empty_room(snapshot.room_id, clear_leader=snapshot.leader is not None)
        except RoomSyncError as exc:
            logger.warning("auto-pause of room %s failed, retrying on next update: %s", snapshot.room_id, exc)
            return
        entry.needs_pause = False

    def forget(self, room_id: RoomID) -> None:
        self._presence.pop(room_id, None)

    def clear(self) -> None:
        self._presence.clear()
