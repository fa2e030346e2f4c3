"""SyncSession: primary user-facing class composing all roomsync components."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from numbers import Real
from typing import Any, Awaitable, Callable

import anyio
import anyio.lowlevel

from roomsync._util.ids import generate_session_id
from roomsync.api.lifecycle import LifecycleEvent, LifecycleManager
from roomsync.config import SyncConfig
from roomsync.core.clock import ClockEstimator, ClockSample, needs_seek, now_ms
from roomsync.core.detector import ChangeDetector
from roomsync.core.envelope import UpdateEnvelope
from roomsync.core.state import PendingUpdates, SyncState
from roomsync.core.throttle import ThrottleGate
from roomsync.core.types import (
    ParticipantID,
    RoomID,
    RoomSnapshot,
    Track,
    Unsubscribe,
    UpdateKind,
)
from roomsync.errors import InvalidArgument, RoomSyncError, SubscriptionLost
from roomsync.store.base import ArrayUnion, DocumentStore
from roomsync.sync.adapter import RoomStore, RoomSubscription
from roomsync.sync.emitter import ChangeHandler, DeliveryQueue
from roomsync.sync.presence import PresenceMonitor

logger = logging.getLogger(__name__)


@dataclass
class SessionHealth:
    active_rooms: list[RoomID]
    listened_rooms: list[RoomID]
    listener_count: int
    last_activity: int
    since_last_activity_ms: int
    healthy: bool


@dataclass(eq=False)
class _Listener:
    subscription: RoomSubscription
    queue: DeliveryQueue


@dataclass(eq=False)
class _PresenceWatch:
    subscription: RoomSubscription
    send: Any
    recv: Any


def _require_room(room_id: RoomID) -> None:
    if not isinstance(room_id, str) or not room_id:
        raise InvalidArgument("room id is required")


def _require_position(position: Any) -> float:
    if isinstance(position, bool) or not isinstance(position, Real):
        raise InvalidArgument("position must be a number of seconds")
    return float(position)


def _as_track(track: Track | dict[str, Any]) -> Track:
    if isinstance(track, Track):
        return track
    if isinstance(track, dict):
        return Track.from_dict(track)
    raise InvalidArgument("track must be a Track or a mapping with a url")


class SyncSession:
    """Per-client façade over the synchronization engine.

    Composes RoomStore + ThrottleGate + ChangeDetector/DeliveryQueue +
    ClockEstimator + PresenceMonitor. Use as an async context manager; the
    session owns a task group for subscriptions and timers.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        config: SyncConfig | None = None,
        clock: Callable[[], int] = now_ms,
        session_id: str | None = None,
    ) -> None:
        self._config = config or SyncConfig()
        self._clock = clock
        self.session_id = session_id or generate_session_id()
        self._rooms = RoomStore(store, backoff=self._config.backoff)
        self._gate = ThrottleGate(self._config)
        self._estimator = ClockEstimator(self._config.clock_window, clock=clock)
        self._lifecycle = LifecycleManager()
        self._presence = PresenceMonitor(
            self._rooms,
            record_update=self._record_update,
            on_leader_change=self._leader_changed,
            on_room_empty=self._room_emptied,
        )
        self._states: dict[RoomID, SyncState] = {}
        self._listeners: dict[RoomID, _Listener] = {}
        self._presence_watches: dict[RoomID, _PresenceWatch] = {}
        self._joined: dict[RoomID, ParticipantID] = {}
        self._trailing_play: dict[RoomID, tuple[float, int]] = {}
        self._task_group: anyio.abc.TaskGroup | None = None
        self._initialized = False
        self._last_activity = clock()

    @property
    def config(self) -> SyncConfig:
        return self._config

    @property
    def rooms(self) -> RoomStore:
        return self._rooms

    @property
    def estimator(self) -> ClockEstimator:
        return self._estimator

    @property
    def presence(self) -> PresenceMonitor:
        return self._presence

    @property
    def lifecycle(self) -> LifecycleManager:
        return self._lifecycle

    @property
    def is_started(self) -> bool:
        return self._task_group is not None

    def on(self, event: LifecycleEvent, hook: Any) -> None:
        self._lifecycle.on(event, hook)

    def state(self, room_id: RoomID) -> SyncState | None:
        return self._states.get(room_id)

    async def __aenter__(self) -> SyncSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def start(self) -> None:
        if self._task_group is not None:
            return
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self._task_group.start_soon(self._recalibrate_loop)
        self._initialized = True

    async def close(self) -> None:
        if self._task_group is None:
            return
        self._teardown_all()
        self._task_group.cancel_scope.cancel()
        await self._task_group.__aexit__(None, None, None)
        self._task_group = None

    def _require_started(self) -> anyio.abc.TaskGroup:
        if self._task_group is None:
            raise RuntimeError("sync session is not started; use 'async with SyncSession(...)'")
        return self._task_group

    # -- internal plumbing -------------------------------------------------

    def _sync_state(self, room_id: RoomID) -> SyncState:
        if room_id not in self._states:
            self._states[room_id] = SyncState(
                room_id=room_id,
                our_updates=PendingUpdates(
                    ttl_ms=self._config.pending_update_ttl_ms,
                    limit=self._config.pending_update_limit,
                ),
            )
        return self._states[room_id]

    def _record_update(self, room_id: RoomID, update_id: str) -> None:
        state = self._states.get(room_id)
        if state is not None:
            state.our_updates.add(update_id, self._clock())

    def _emit(self, event: LifecycleEvent, *args: Any) -> None:
        pending = self._lifecycle.fire(event, self, *args)
        for awaitable in pending:
            if self._task_group is not None:
                self._task_group.start_soon(self._await_hook, awaitable)
            elif hasattr(awaitable, "close"):
                awaitable.close()

    @staticmethod
    async def _await_hook(awaitable: Awaitable[Any]) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("async lifecycle hook failed")

    def _leader_changed(self, room_id: RoomID, leader: ParticipantID | None) -> None:
        self._emit(LifecycleEvent.ON_LEADER_CHANGE, room_id, leader)

    def _room_emptied(self, room_id: RoomID) -> None:
        self._emit(LifecycleEvent.ON_ROOM_EMPTY, room_id)

    def _project(self, snapshot: RoomSnapshot) -> RoomSnapshot:
        position = self._estimator.project(
            snapshot.current_position,
            snapshot.updated_at,
            is_playing=snapshot.is_playing,
        )
        return snapshot.with_projection(position)

    async def _send(
        self,
        room_id: RoomID,
        payload: dict[str, Any],
        *,
        kind: UpdateKind | None = None,
        slot_ms: int | None = None,
    ) -> str:
        """Tag and write ``payload``. A failed write gives its throttle slot back."""
        now = self._clock()
        envelope = UpdateEnvelope.build(payload, now)
        self._sync_state(room_id).our_updates.add(envelope.update_id, now)
        try:
            await self._rooms.write(room_id, envelope.to_partial())
        except RoomSyncError as exc:
            logger.error("failed to update room %s: %s", room_id, exc)
            if kind is not None and slot_ms is not None:
                self._gate.release(room_id, kind, slot_ms)
            raise
        self._last_activity = now
        return envelope.update_id

    # -- membership --------------------------------------------------------

    async def join(
        self,
        room_id: RoomID,
        participant_id: ParticipantID,
        as_leader: bool = False,
    ) -> RoomSnapshot:
        """Create the room if needed and add ``participant_id`` to it. Idempotent."""
        _require_room(room_id)
        if not isinstance(participant_id, str) or not participant_id:
            raise InvalidArgument("participant id is required")
        self._require_started()
        await self._lifecycle.fire_async(LifecycleEvent.BEFORE_JOIN, self, room_id, participant_id)

        snapshot = await self._rooms.create_or_join(room_id, participant_id, as_leader)
        snapshot = await self._presence.on_join(room_id, participant_id, snapshot)
        self._joined[room_id] = participant_id
        self._watch_presence(room_id)
        self._last_activity = self._clock()

        await self._lifecycle.fire_async(LifecycleEvent.AFTER_JOIN, self, snapshot)
        return snapshot

    async def leave(self, room_id: RoomID, participant_id: ParticipantID) -> None:
        """Remove membership, hand over leadership and drop all local state for the room."""
        _require_room(room_id)
        if not isinstance(participant_id, str) or not participant_id:
            raise InvalidArgument("participant id is required")
        await self._lifecycle.fire_async(LifecycleEvent.BEFORE_LEAVE, self, room_id, participant_id)

        self._drop_local_state(room_id)
        try:
            snapshot = await self._rooms.leave(room_id, participant_id)
        except RoomSyncError:
            self._joined.pop(room_id, None)
            self._unwatch_presence(room_id)
            raise
        self._joined.pop(room_id, None)
        if await self._presence.on_leave(room_id, participant_id, snapshot):
            self._unwatch_presence(room_id)
        elif self._task_group is not None:
            # keep watching until the empty room is paused
            self._watch_presence(room_id)
        self._last_activity = self._clock()

        await self._lifecycle.fire_async(LifecycleEvent.AFTER_LEAVE, self, room_id, participant_id)

    # -- presence ----------------------------------------------------------

    def _watch_presence(self, room_id: RoomID) -> None:
        if room_id in self._presence_watches:
            return
        tg = self._require_started()
        self._presence.watch(room_id)
        send, recv = anyio.create_memory_object_stream[RoomSnapshot | None](64)

        def on_snapshot(snapshot: RoomSnapshot | None) -> None:
            try:
                send.send_nowait(snapshot)
            except anyio.WouldBlock:
                logger.warning("dropping presence update for room %s because the queue is full", room_id)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                logger.debug("ignoring presence update for closed room %s", room_id)

        subscription = self._rooms.subscribe(
            room_id,
            on_snapshot,
            on_lost=partial(self._subscription_lost, room_id),
        )
        self._presence_watches[room_id] = _PresenceWatch(subscription, send, recv)
        tg.start_soon(self._presence_loop, room_id, recv)
        tg.start_soon(subscription.run)

    async def _presence_loop(self, room_id: RoomID, recv: Any) -> None:
        async with recv:
            async for snapshot in recv:
                try:
                    await self._presence.handle(snapshot)
                except Exception as exc:
                    logger.exception("presence handling failed")
                    self._emit(LifecycleEvent.ON_ERROR, exc)
                if self._watch_settled(room_id):
                    self._unwatch_presence(room_id)

    def _watch_settled(self, room_id: RoomID) -> bool:
        """A watch kept only for a pending auto-pause is done once the pause lands."""
        if room_id in self._joined or room_id in self._listeners:
            return False
        entry = self._presence.get(room_id)
        return entry is None or not entry.needs_pause

    def _unwatch_presence(self, room_id: RoomID) -> None:
        watch = self._presence_watches.pop(room_id, None)
        if watch is not None:
            watch.subscription()
            watch.send.close()
        self._presence.forget(room_id)

    # -- listening ---------------------------------------------------------

    def listen(self, room_id: RoomID, on_change: ChangeHandler) -> Unsubscribe:
        """Deliver meaningful remote changes for ``room_id`` to ``on_change``.

        Replaces any previous listener for the room. The returned function
        tears the listener down and clears the room's sync state; calling it
        again does nothing.
        """
        _require_room(room_id)
        if not callable(on_change):
            raise InvalidArgument("callback function is required")
        tg = self._require_started()

        if room_id in self._listeners:
            logger.debug("replacing existing listener for room %s", room_id)
            self._stop_listener(room_id)

        state = self._sync_state(room_id)
        state.first_snapshot = True
        detector = ChangeDetector(state, self._config)
        queue = DeliveryQueue(
            detector,
            on_change,
            clock=self._clock,
            debounce_ms=self._config.debounce_ms,
            prepare=self._project,
        )
        subscription = self._rooms.subscribe(
            room_id,
            queue.offer,
            on_lost=partial(self._subscription_lost, room_id),
        )
        listener = _Listener(subscription=subscription, queue=queue)
        self._listeners[room_id] = listener
        tg.start_soon(queue.run)
        tg.start_soon(subscription.run)
        self._watch_presence(room_id)
        logger.info("listening to room %s (active listeners: %s)", room_id, len(self._listeners))

        def unsubscribe() -> None:
            if self._listeners.get(room_id) is not listener:
                return
            self._stop_listener(room_id)
            self._states.pop(room_id, None)
            if room_id not in self._joined:
                self._unwatch_presence(room_id)
            logger.info("stopped listening to room %s", room_id)

        return unsubscribe

    def _stop_listener(self, room_id: RoomID) -> None:
        listener = self._listeners.pop(room_id, None)
        if listener is not None:
            listener.subscription()
            listener.queue.stop()

    def _subscription_lost(self, room_id: RoomID, exc: SubscriptionLost) -> None:
        listener = self._listeners.get(room_id)
        if listener is not None and listener.subscription.closed:
            self._stop_listener(room_id)
            self._states.pop(room_id, None)
        watch = self._presence_watches.get(room_id)
        if watch is not None and watch.subscription.closed:
            self._presence_watches.pop(room_id, None)
            watch.send.close()
        self._emit(LifecycleEvent.ON_SUBSCRIPTION_LOST, room_id, exc)

    def _drop_local_state(self, room_id: RoomID) -> None:
        self._stop_listener(room_id)
        self._states.pop(room_id, None)
        self._trailing_play.pop(room_id, None)
        self._gate.forget(room_id)

    def _forget_room(self, room_id: RoomID) -> None:
        self._drop_local_state(room_id)
        self._unwatch_presence(room_id)

    def _teardown_all(self) -> None:
        for room_id in set(self._listeners) | set(self._presence_watches):
            self._forget_room(room_id)

    # -- outbound updates --------------------------------------------------

    async def set_track(self, room_id: RoomID, track: Track | dict[str, Any]) -> bool:
        """Install ``track`` as the room's current track and start it from zero."""
        _require_room(room_id)
        track = _as_track(track)
        now = self._clock()
        if not self._gate.allow(room_id, UpdateKind.TRACK, now):
            return False
        await self._send(
            room_id,
            {"currentTrack": track.to_dict(), "isPlaying": True, "currentPosition": 0},
            kind=UpdateKind.TRACK,
            slot_ms=now,
        )
        logger.info("track updated in room %s: %s", room_id, track.url)
        return True

    async def set_playback_state(self, room_id: RoomID, is_playing: bool, position: float) -> bool:
        """Write play/pause plus position. Pauses are never throttled."""
        _require_room(room_id)
        if not isinstance(is_playing, bool):
            raise InvalidArgument("is_playing must be a bool")
        position = _require_position(position)
        now = self._clock()
        if not self._gate.allow(room_id, UpdateKind.PLAYBACK, now, is_pause=not is_playing):
            self._defer_play(room_id, position, now)
            return False
        self._trailing_play.pop(room_id, None)
        await self._send(
            room_id,
            {"isPlaying": is_playing, "currentPosition": position},
            kind=UpdateKind.PLAYBACK,
            slot_ms=now,
        )
        logger.info("playback state updated in room %s: playing=%s position=%.2f", room_id, is_playing, position)
        return True

    def _defer_play(self, room_id: RoomID, position: float, now: int) -> None:
        scheduled = room_id in self._trailing_play
        self._trailing_play[room_id] = (position, now)
        if scheduled or self._task_group is None:
            return
        delay = self._gate.remaining_ms(room_id, UpdateKind.PLAYBACK, now) / 1000.0
        self._task_group.start_soon(self._flush_play, room_id, delay)

    async def _flush_play(self, room_id: RoomID, delay: float) -> None:
        await anyio.sleep(delay)
        while room_id in self._trailing_play:
            remaining = self._gate.remaining_ms(room_id, UpdateKind.PLAYBACK, self._clock())
            if remaining > 0:
                await anyio.sleep(remaining / 1000.0)
                continue
            position, requested_at = self._trailing_play.pop(room_id)
            position += max(0, self._clock() - requested_at) / 1000.0
            logger.debug("flushing coalesced play for room %s at %.2fs", room_id, position)
            try:
                await self.set_playback_state(room_id, True, position)
            except RoomSyncError as exc:
                logger.warning("coalesced play for room %s failed: %s", room_id, exc)
                self._emit(LifecycleEvent.ON_ERROR, exc)
            return

    async def set_position(self, room_id: RoomID, position: float) -> bool:
        """Report the current position; throttled to the position interval."""
        _require_room(room_id)
        position = _require_position(position)
        now = self._clock()
        if not self._gate.allow(room_id, UpdateKind.POSITION, now):
            return False
        await self._send(room_id, {"currentPosition": position}, kind=UpdateKind.POSITION, slot_ms=now)
        logger.debug("position updated in room %s: %.2fs", room_id, position)
        return True

    async def add_to_playlist(self, room_id: RoomID, track: Track | dict[str, Any]) -> None:
        _require_room(room_id)
        track = _as_track(track)
        await self._send(room_id, {"playlist": ArrayUnion(track.to_dict())})
        logger.info("track added to playlist in room %s: %s", room_id, track.url)

    # -- queries and maintenance -------------------------------------------

    async def get_room(self, room_id: RoomID) -> RoomSnapshot | None:
        _require_room(room_id)
        snapshot = await self._rooms.read(room_id)
        if snapshot is None:
            logger.warning("room %s not found", room_id)
        return snapshot

    def needs_seek(self, local_position: float, snapshot: RoomSnapshot) -> bool:
        target = snapshot.projected_position
        if target is None:
            target = snapshot.current_position
        return needs_seek(local_position, target, self._config.drift_threshold_s)

    async def calibrate(self) -> ClockSample:
        return await self._estimator.calibrate(self._rooms.store, f"_clock-{self.session_id}")

    async def _recalibrate_loop(self) -> None:
        while True:
            try:
                await self.calibrate()
            except (RoomSyncError, ValueError) as exc:
                logger.warning("clock calibration failed, keeping previous estimate: %s", exc)
            except Exception:
                logger.exception("unexpected clock calibration failure")
            await anyio.sleep(self._config.recalibrate_interval_s)

    def health(self) -> SessionHealth:
        now = self._clock()
        return SessionHealth(
            active_rooms=list(self._joined),
            listened_rooms=list(self._listeners),
            listener_count=len(self._listeners),
            last_activity=self._last_activity,
            since_last_activity_ms=now - self._last_activity,
            healthy=self._initialized and len(self._listeners) > 0,
        )

    async def reset(self) -> None:
        """Drop every listener and all per-room state without touching the store."""
        self._teardown_all()
        self._states.clear()
        self._trailing_play.clear()
        self._gate.clear()
        self._presence.clear()
        self._joined.clear()
        self._last_activity = self._clock()
        await anyio.lowlevel.checkpoint()
        logger.info("sync session %s reset", self.session_id)
