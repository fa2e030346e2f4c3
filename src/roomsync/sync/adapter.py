"""RoomStore: the only component that talks to the document store."""

from __future__ import annotations

import logging
from typing import Any, Callable

import anyio

from roomsync.config import BackoffConfig
from roomsync.core.types import ParticipantID, RoomID, RoomSnapshot
from roomsync.errors import StaleWrite, StoreUnavailable, SubscriptionLost
from roomsync.store.base import (
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    Document,
    DocumentNotFound,
    DocumentStore,
)

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[["RoomSnapshot | None"], None]
LostCallback = Callable[[SubscriptionLost], Any]


def _default_room(participant_id: ParticipantID, as_leader: bool) -> Document:
    return {
        "createdAt": SERVER_TIMESTAMP,
        "updatedAt": SERVER_TIMESTAMP,
        "currentTrack": None,
        "isPlaying": False,
        "currentPosition": 0,
        "playlist": [],
        "participants": ArrayUnion(participant_id),
        "leader": participant_id if as_leader else None,
        "updateId": None,
    }


class RoomSubscription:
    """A retrying store subscription for one room.

    Calling the subscription unsubscribes it; doing so more than once is harmless.
    ``run()`` must be started in a task group to drive reconnection.
    """

    def __init__(
        self,
        store: DocumentStore,
        room_id: RoomID,
        on_change: SnapshotCallback,
        *,
        on_lost: LostCallback | None = None,
        backoff: BackoffConfig | None = None,
    ) -> None:
        self._store = store
        self._room_id = room_id
        self._on_change = on_change
        self._on_lost = on_lost
        self._backoff = backoff or BackoffConfig()
        self._cancel: Callable[[], None] | None = None
        self._failed = anyio.Event()
        self._closed = False
        self._attempt = 0
        self._scope: anyio.CancelScope | None = None

    @property
    def room_id(self) -> RoomID:
        return self._room_id

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, doc: Document | None) -> None:
        if self._closed:
            return
        self._attempt = 0
        snapshot = RoomSnapshot.from_document(self._room_id, doc) if doc is not None else None
        try:
            self._on_change(snapshot)
        except Exception:
            logger.exception("change handler for room %s failed", self._room_id)

    def _error(self, exc: Exception) -> None:
        logger.warning("subscription to room %s failed: %s", self._room_id, exc)
        self._failed.set()

    def _register(self) -> None:
        self._failed = anyio.Event()
        self._cancel = self._store.on_change(self._room_id, self._deliver, self._error)

    def _release(self) -> None:
        cancel, self._cancel = self._cancel, None
        if cancel is not None:
            cancel()

    async def run(self, *, task_status: anyio.abc.TaskStatus = anyio.TASK_STATUS_IGNORED) -> None:
        """Keep the subscription alive, resubscribing with exponential backoff."""
        started = False
        with anyio.CancelScope() as scope:
            self._scope = scope
            try:
                while not self._closed:
                    try:
                        self._register()
                    except StoreUnavailable as exc:
                        self._error(exc)
                    if not started:
                        started = True
                        task_status.started()
                    await self._failed.wait()
                    self._release()
                    if self._closed:
                        break
                    if self._attempt >= self._backoff.retries:
                        lost = SubscriptionLost(self._room_id, self._attempt)
                        logger.error("%s", lost)
                        self._closed = True
                        if self._on_lost is not None:
                            self._on_lost(lost)
                        break
                    delay = self._backoff.delay(self._attempt)
                    self._attempt += 1
                    logger.warning(
                        "resubscribing to room %s (attempt=%s/%s) in %.2fs",
                        self._room_id,
                        self._attempt,
                        self._backoff.retries,
                        delay,
                    )
                    await anyio.sleep(delay)
            finally:
                self._release()
                if not started:
                    task_status.started()

    def __call__(self) -> None:
        self._closed = True
        self._release()
        if self._scope is not None:
            self._scope.cancel()


class RoomStore:
    """Create/join/leave/read/write/subscribe operations over room documents."""

    def __init__(self, store: DocumentStore, *, backoff: BackoffConfig | None = None) -> None:
        self._store = store
        self._backoff = backoff or BackoffConfig()

    @property
    def store(self) -> DocumentStore:
        return self._store

    async def read(self, room_id: RoomID) -> RoomSnapshot | None:
        doc = await self._store.get(room_id)
        if doc is None:
            return None
        return RoomSnapshot.from_document(room_id, doc)

    async def write(self, room_id: RoomID, partial: Document) -> None:
        """Merge ``partial`` into the room document, stamping ``updatedAt``."""
        payload = dict(partial)
        payload["updatedAt"] = SERVER_TIMESTAMP
        try:
            await self._store.update(room_id, payload)
        except DocumentNotFound as exc:
            raise StaleWrite(room_id) from exc

    async def create_or_join(
        self,
        room_id: RoomID,
        participant_id: ParticipantID,
        as_leader: bool = False,
    ) -> RoomSnapshot:
        existing = await self.read(room_id)
        if existing is None:
            logger.info("creating room %s for %s", room_id, participant_id)
            # merge so a concurrent creator keeps its membership
            await self._store.set(room_id, _default_room(participant_id, as_leader), merge=True)
        else:
            logger.info("joining existing room %s as %s", room_id, participant_id)
            partial: Document = {"participants": ArrayUnion(participant_id)}
            if as_leader and not existing.leader:
                partial["leader"] = participant_id
            try:
                await self.write(room_id, partial)
            except StaleWrite:
                # deleted between read and write: recreate
                await self._store.set(room_id, _default_room(participant_id, as_leader), merge=True)
        snapshot = await self.read(room_id)
        if snapshot is None:
            raise StaleWrite(room_id)
        if participant_id not in snapshot.participants:
            logger.warning("%s missing from room %s after joining, adding again", participant_id, room_id)
            await self.write(room_id, {"participants": ArrayUnion(participant_id)})
            snapshot = await self.read(room_id)
            if snapshot is None:
                raise StaleWrite(room_id)
        return snapshot

    async def leave(self, room_id: RoomID, participant_id: ParticipantID) -> RoomSnapshot | None:
        """Remove the participant; returns the room as it stands afterwards."""
        try:
            await self.write(room_id, {"participants": ArrayRemove(participant_id)})
        except StaleWrite:
            logger.warning("room %s not found while leaving", room_id)
            return None
        return await self.read(room_id)

    def subscribe(
        self,
        room_id: RoomID,
        on_change: SnapshotCallback,
        *,
        on_lost: LostCallback | None = None,
    ) -> RoomSubscription:
        return RoomSubscription(self._store, room_id, on_change, on_lost=on_lost, backoff=self._backoff)
