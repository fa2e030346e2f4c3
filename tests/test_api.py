"""Tests for API module: lifecycle hooks, delivery queue, SyncSession."""

import anyio
import pytest

from roomsync import (
    BackoffConfig,
    InvalidArgument,
    LifecycleEvent,
    LoroDocumentStore,
    StaleWrite,
    StoreUnavailable,
    SubscriptionLost,
    SyncConfig,
    SyncSession,
    Track,
)
from roomsync.api.lifecycle import LifecycleManager
from roomsync.core.clock import now_ms
from roomsync.core.detector import ChangeDetector, Decision
from roomsync.core.state import SyncState
from roomsync.core.types import RoomSnapshot
from roomsync.sync.emitter import DeliveryQueue

SONG = {"url": "https://cdn.example/song.mp3", "title": "Song", "artist": "Band", "duration": 200}


async def wait_for(predicate, timeout=2.0):
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.01)


async def room_doc(store, room_id):
    return RoomSnapshot.from_document(room_id, await store.get(room_id))


async def wait_for_room(store, room_id, predicate, timeout=2.0):
    with anyio.fail_after(timeout):
        while not predicate(await room_doc(store, room_id)):
            await anyio.sleep(0.01)


class FlakyPauseStore(LoroDocumentStore):
    """Fails the next ``failing_pauses`` writes that stop playback."""

    def __init__(self):
        super().__init__()
        self.failing_pauses = 0

    async def update(self, doc_id, partial):
        if self.failing_pauses and partial.get("isPlaying") is False:
            self.failing_pauses -= 1
            raise StoreUnavailable("pause write failed")
        await super().update(doc_id, partial)


class TestLifecycleManager:
    def test_fire_calls_hooks(self):
        mgr = LifecycleManager()
        calls = []
        mgr.on(LifecycleEvent.AFTER_JOIN, lambda *args: calls.append(args))
        mgr.fire(LifecycleEvent.AFTER_JOIN, "session", "room")
        assert calls == [("session", "room")]

    def test_failing_hook_does_not_stop_others(self):
        mgr = LifecycleManager()
        calls = []

        def bad(*args):
            raise RuntimeError("hook bug")

        mgr.on(LifecycleEvent.ON_ROOM_EMPTY, bad)
        mgr.on(LifecycleEvent.ON_ROOM_EMPTY, lambda *args: calls.append(args))
        mgr.fire(LifecycleEvent.ON_ROOM_EMPTY, "r1")
        assert calls == [("r1",)]

    def test_decorator_and_off(self):
        mgr = LifecycleManager()
        calls = []

        @mgr.hook(LifecycleEvent.ON_LEADER_CHANGE)
        def changed(*args):
            calls.append(args)

        mgr.fire(LifecycleEvent.ON_LEADER_CHANGE, "r1", "bob")
        mgr.off(LifecycleEvent.ON_LEADER_CHANGE, changed)
        mgr.fire(LifecycleEvent.ON_LEADER_CHANGE, "r1", "carol")
        assert calls == [("r1", "bob")]

    @pytest.mark.anyio
    async def test_fire_async_awaits_coroutines(self):
        mgr = LifecycleManager()
        calls = []

        async def hook(room_id):
            await anyio.sleep(0)
            calls.append(room_id)

        mgr.on(LifecycleEvent.BEFORE_LEAVE, hook)
        await mgr.fire_async(LifecycleEvent.BEFORE_LEAVE, "r1")
        assert calls == ["r1"]

    def test_fire_returns_awaitables(self):
        mgr = LifecycleManager()

        async def hook():
            pass

        mgr.on(LifecycleEvent.ON_ERROR, hook)
        pending = mgr.fire(LifecycleEvent.ON_ERROR)
        assert len(pending) == 1
        pending[0].close()


class TestDeliveryQueue:
    def make_queue(self, delivered, debounce_ms=1000):
        state = SyncState(room_id="r1", first_snapshot=False)
        detector = ChangeDetector(state, SyncConfig(debounce_ms=debounce_ms))
        queue = DeliveryQueue(detector, delivered.append, clock=now_ms, debounce_ms=debounce_ms)
        return state, queue

    @pytest.mark.anyio
    async def test_burst_delivers_last_value_once(self):
        delivered = []
        _, queue = self.make_queue(delivered)
        async with anyio.create_task_group() as tg:
            await tg.start(queue.run)
            decisions = [
                queue.offer(
                    RoomSnapshot.from_document(
                        "r1",
                        {"isPlaying": True, "currentPosition": i, "participants": ["a", "b"]},
                    )
                )
                for i in range(10)
            ]
            await wait_for(lambda: delivered)
            await anyio.sleep(0.05)
            queue.stop()
        assert decisions[0] is Decision.DELIVER_NOW
        assert set(decisions[1:]) == {Decision.DEFER}
        assert len(delivered) == 1
        assert delivered[0].current_position == 9
        assert queue.delivered_count == 1

    @pytest.mark.anyio
    async def test_debounced_delivery_arrives_after_window(self):
        delivered = []
        state, queue = self.make_queue(delivered, debounce_ms=100)
        state.last_delivered_at = now_ms()
        async with anyio.create_task_group() as tg:
            await tg.start(queue.run)
            decision = queue.offer(RoomSnapshot.from_document("r1", {"isPlaying": True}))
            assert decision is Decision.DEFER
            await anyio.sleep(0.02)
            assert delivered == []
            await wait_for(lambda: delivered)
            queue.stop()
        assert delivered[0].is_playing is True
        assert not queue.has_pending

    @pytest.mark.anyio
    async def test_echo_during_pending_is_dropped(self):
        delivered = []
        state, queue = self.make_queue(delivered)
        async with anyio.create_task_group() as tg:
            await tg.start(queue.run)
            queue.offer(RoomSnapshot.from_document("r1", {"isPlaying": True}))
            state.our_updates.add("mine", now_ms())
            decision = queue.offer(
                RoomSnapshot.from_document("r1", {"isPlaying": False, "updateId": "mine"})
            )
            await wait_for(lambda: delivered)
            queue.stop()
        assert decision is Decision.IGNORE
        assert delivered[0].is_playing is True

    @pytest.mark.anyio
    async def test_steady_notifications_do_not_hold_back_delivery(self):
        delivered = []
        state, queue = self.make_queue(delivered, debounce_ms=200)
        state.last_delivered_at = now_ms()
        settled = RoomSnapshot.from_document("r1", {"isPlaying": False, "currentPosition": 0.5})
        async with anyio.create_task_group() as tg:
            await tg.start(queue.run)
            assert queue.offer(RoomSnapshot.from_document("r1", {"isPlaying": True})) is Decision.DEFER
            with anyio.fail_after(0.6):
                while not delivered:
                    assert queue.offer(settled) is Decision.DEFER
                    await anyio.sleep(0.05)
            queue.stop()
        assert len(delivered) == 1
        # the burst ended back where it started, so that is what is delivered
        assert delivered[0].is_playing is False

    @pytest.mark.anyio
    async def test_changes_during_window_keep_first_deadline(self):
        delivered = []
        state, queue = self.make_queue(delivered, debounce_ms=200)
        state.last_delivered_at = now_ms()
        last_offered = 0
        async with anyio.create_task_group() as tg:
            await tg.start(queue.run)
            with anyio.fail_after(0.6):
                while not delivered:
                    last_offered += 1
                    queue.offer(RoomSnapshot.from_document("r1", {"isPlaying": True, "currentPosition": last_offered}))
                    await anyio.sleep(0.05)
            queue.stop()
        assert len(delivered) == 1
        assert delivered[0].current_position == last_offered


class TestSessionValidation:
    @pytest.mark.anyio
    async def test_requires_started_session(self):
        session = SyncSession(LoroDocumentStore())
        with pytest.raises(RuntimeError):
            await session.join("r1", "alice")
        with pytest.raises(RuntimeError):
            session.listen("r1", lambda s: None)

    @pytest.mark.anyio
    async def test_invalid_arguments(self):
        async with SyncSession(LoroDocumentStore()) as session:
            with pytest.raises(InvalidArgument):
                await session.join("", "alice")
            with pytest.raises(InvalidArgument):
                await session.join("r1", "")
            with pytest.raises(InvalidArgument):
                session.listen("r1", None)
            with pytest.raises(InvalidArgument):
                await session.set_track("r1", {"title": "no url"})
            with pytest.raises(InvalidArgument):
                await session.set_position("r1", "ten")
            with pytest.raises(InvalidArgument):
                await session.set_playback_state("r1", "yes", 1.0)
            with pytest.raises(InvalidArgument):
                await session.set_playback_state("r1", True, True)

    @pytest.mark.anyio
    async def test_invalid_argument_is_value_error(self):
        async with SyncSession(LoroDocumentStore()) as session:
            with pytest.raises(ValueError):
                await session.get_room("")

    @pytest.mark.anyio
    async def test_non_numeric_duration(self):
        async with SyncSession(LoroDocumentStore()) as session:
            with pytest.raises(InvalidArgument):
                await session.set_track("r1", {"url": "https://cdn.example/a.mp3", "duration": "3:20"})


class TestMembership:
    @pytest.mark.anyio
    async def test_first_joiner_becomes_leader(self):
        store = LoroDocumentStore()
        async with SyncSession(store) as a:
            snapshot = await a.join("r1", "alice")
        assert snapshot.participants == ("alice",)
        assert snapshot.leader == "alice"

    @pytest.mark.anyio
    async def test_join_is_idempotent(self):
        store = LoroDocumentStore()
        async with SyncSession(store) as a:
            await a.join("r1", "alice")
            snapshot = await a.join("r1", "alice")
        assert snapshot.participants == ("alice",)

    @pytest.mark.anyio
    async def test_join_hooks(self):
        store = LoroDocumentStore()
        events = []
        async with SyncSession(store) as a:
            a.on(LifecycleEvent.BEFORE_JOIN, lambda s, room, pid: events.append(("before", room, pid)))
            a.on(LifecycleEvent.AFTER_JOIN, lambda s, snap: events.append(("after", snap.room_id)))
            await a.join("r1", "alice")
        assert events == [("before", "r1", "alice"), ("after", "r1")]

    @pytest.mark.anyio
    async def test_leader_handover_and_empty_room(self):
        store = LoroDocumentStore()
        leaders = []
        emptied = []
        async with SyncSession(store) as a, SyncSession(store) as b:
            b.on(LifecycleEvent.ON_LEADER_CHANGE, lambda s, room, leader: leaders.append(leader))
            b.on(LifecycleEvent.ON_ROOM_EMPTY, lambda s, room: emptied.append(room))
            await a.join("r1", "alice")
            await b.join("r1", "bob")
            await a.set_track("r1", SONG)

            await a.leave("r1", "alice")
            snapshot = await room_doc(store, "r1")
            assert snapshot.participants == ("bob",)
            assert snapshot.leader == "bob"
            assert snapshot.is_playing is True

            await b.leave("r1", "bob")
            snapshot = await room_doc(store, "r1")
            assert snapshot.participants == ()
            assert snapshot.leader is None
            assert snapshot.is_playing is False
        assert leaders == [None]
        assert emptied == ["r1"]

    @pytest.mark.anyio
    async def test_as_leader_takes_leaderless_room(self):
        store = LoroDocumentStore()
        async with SyncSession(store) as a:
            snapshot = await a.join("r1", "alice", as_leader=True)
        assert snapshot.leader == "alice"

    @pytest.mark.anyio
    async def test_presence_pauses_room_emptied_elsewhere(self):
        store = LoroDocumentStore()
        emptied = []
        async with SyncSession(store) as a, SyncSession(store) as observer:
            observer.on(LifecycleEvent.ON_ROOM_EMPTY, lambda s, room: emptied.append(room))
            await a.join("r1", "alice")
            await a.set_track("r1", SONG)
            observer.listen("r1", lambda s: None)
            await anyio.sleep(0.05)
            # the participant vanished without leaving cleanly
            await store.update("r1", {"participants": []})

            async def paused():
                return not (await room_doc(store, "r1")).is_playing

            with anyio.fail_after(2):
                while not await paused():
                    await anyio.sleep(0.01)
        assert emptied == ["r1"]

    @pytest.mark.anyio
    async def test_leave_drops_local_state(self):
        store = LoroDocumentStore()
        async with SyncSession(store) as a:
            await a.join("r1", "alice")
            a.listen("r1", lambda s: None)
            assert a.state("r1") is not None
            await a.leave("r1", "alice")
            assert a.state("r1") is None
            assert a.health().listener_count == 0
            assert a.health().active_rooms == []

    @pytest.mark.anyio
    async def test_room_ids_with_slashes(self):
        store = LoroDocumentStore()
        seen = []
        async with SyncSession(store) as a, SyncSession(store) as b:
            await a.join("team/lobby", "alice")
            await b.join("team/lobby", "bob")
            b.listen("team/lobby", seen.append)
            await anyio.sleep(0.05)
            await a.set_track("team/lobby", SONG)
            await wait_for(lambda: seen)
        assert seen[0].room_id == "team/lobby"
        assert seen[0].track_url == SONG["url"]
        snapshot = await room_doc(store, "team/lobby")
        assert snapshot.participants == ("alice", "bob")

    @pytest.mark.anyio
    async def test_concurrent_joins_keep_both_members(self):
        store = LoroDocumentStore()
        async with SyncSession(store) as a, SyncSession(store) as b:
            async with anyio.create_task_group() as tg:
                tg.start_soon(a.join, "r1", "alice")
                tg.start_soon(b.join, "r1", "bob")
            snapshot = await room_doc(store, "r1")
        assert sorted(snapshot.participants) == ["alice", "bob"]
        assert snapshot.leader in ("alice", "bob")

    @pytest.mark.anyio
    async def test_failed_auto_pause_is_retried(self):
        store = FlakyPauseStore()
        async with SyncSession(store) as a:
            await a.join("r1", "alice")
            await a.set_track("r1", SONG)
            store.failing_pauses = 1
            await a.leave("r1", "alice")
            assert store.failing_pauses == 0
            # any later change to the room retries the pause
            await store.update("r1", {"currentPosition": 3})
            await wait_for_room(store, "r1", lambda s: not s.is_playing)
            await wait_for(lambda: a.presence.get("r1") is None)
        snapshot = await room_doc(store, "r1")
        assert snapshot.participants == ()
        assert snapshot.leader is None


class TestSync:
    @pytest.mark.anyio
    async def test_remote_track_reaches_listener_but_not_writer(self):
        store = LoroDocumentStore()
        seen_a = []
        seen_b = []
        async with SyncSession(store) as a, SyncSession(store) as b:
            await a.join("r1", "alice")
            await b.join("r1", "bob")
            a.listen("r1", seen_a.append)
            b.listen("r1", seen_b.append)
            await anyio.sleep(0.05)

            assert await a.set_track("r1", Track(url=SONG["url"], title="Song"))
            await wait_for(lambda: seen_b)
            await anyio.sleep(0.1)

        assert seen_a == []
        assert len(seen_b) == 1
        snapshot = seen_b[0]
        assert snapshot.track_url == SONG["url"]
        assert snapshot.is_playing is True
        assert snapshot.current_position == 0
        assert snapshot.projected_position is not None
        assert snapshot.projected_position >= 0

    @pytest.mark.anyio
    async def test_pause_propagates(self):
        store = LoroDocumentStore()
        seen = []
        config = SyncConfig(debounce_ms=50)
        async with SyncSession(store, config=config) as a, SyncSession(store, config=config) as b:
            await a.join("r1", "alice")
            await b.join("r1", "bob")
            await a.set_track("r1", SONG)
            b.listen("r1", seen.append)
            await wait_for(lambda: seen)

            assert await a.set_playback_state("r1", False, 42.5)
            await wait_for(lambda: len(seen) >= 2)

        assert seen[-1].is_playing is False
        assert seen[-1].current_position == 42.5
        assert seen[-1].projected_position == 42.5
        assert b.needs_seek(10.0, seen[-1]) is True
        assert b.needs_seek(41.0, seen[-1]) is False

    @pytest.mark.anyio
    async def test_position_writes_are_throttled(self):
        store = LoroDocumentStore()
        async with SyncSession(store) as a:
            await a.join("r1", "alice")
            assert await a.set_position("r1", 10.0) is True
            assert await a.set_position("r1", 11.0) is False
            snapshot = await a.get_room("r1")
        assert snapshot.current_position == 10.0

    @pytest.mark.anyio
    async def test_pauses_are_never_throttled(self):
        store = LoroDocumentStore()
        async with SyncSession(store) as a:
            await a.join("r1", "alice")
            assert await a.set_playback_state("r1", False, 1.0) is True
            assert await a.set_playback_state("r1", False, 2.0) is True
            snapshot = await a.get_room("r1")
        assert snapshot.current_position == 2.0

    @pytest.mark.anyio
    async def test_throttled_play_is_coalesced(self):
        store = LoroDocumentStore()
        config = SyncConfig(playback_interval_ms=200)
        async with SyncSession(store, config=config) as a:
            await a.join("r1", "alice")
            assert await a.set_playback_state("r1", False, 0.0) is True
            assert await a.set_playback_state("r1", True, 1.0) is False
            assert await a.set_playback_state("r1", True, 2.0) is False

            async def playing():
                return (await a.get_room("r1")).is_playing

            with anyio.fail_after(2):
                while not await playing():
                    await anyio.sleep(0.01)
            snapshot = await a.get_room("r1")
        assert 2.0 <= snapshot.current_position < 3.0

    @pytest.mark.anyio
    async def test_pause_cancels_coalesced_play(self):
        store = LoroDocumentStore()
        config = SyncConfig(playback_interval_ms=100)
        async with SyncSession(store, config=config) as a:
            await a.join("r1", "alice")
            assert await a.set_playback_state("r1", True, 0.0) is True
            assert await a.set_playback_state("r1", True, 1.0) is False
            assert await a.set_playback_state("r1", False, 1.5) is True
            await anyio.sleep(0.3)
            snapshot = await a.get_room("r1")
        assert snapshot.is_playing is False
        assert snapshot.current_position == 1.5

    @pytest.mark.anyio
    async def test_add_to_playlist(self):
        store = LoroDocumentStore()
        async with SyncSession(store) as a:
            await a.join("r1", "alice")
            await a.add_to_playlist("r1", SONG)
            await a.add_to_playlist("r1", SONG)
            await a.add_to_playlist("r1", {"url": "https://cdn.example/other.mp3"})
            snapshot = await a.get_room("r1")
        assert [t.url for t in snapshot.playlist] == [SONG["url"], "https://cdn.example/other.mp3"]

    @pytest.mark.anyio
    async def test_get_missing_room(self):
        async with SyncSession(LoroDocumentStore()) as a:
            assert await a.get_room("ghost") is None

    @pytest.mark.anyio
    async def test_failed_write_does_not_use_throttle_slot(self):
        store = LoroDocumentStore()
        async with SyncSession(store) as a:
            with pytest.raises(StaleWrite):
                await a.set_track("r1", SONG)
            await a.join("r1", "alice")
            assert await a.set_track("r1", SONG) is True
            snapshot = await a.get_room("r1")
        assert snapshot.track_url == SONG["url"]


class TestListenerLifecycle:
    @pytest.mark.anyio
    async def test_unsubscribe_is_idempotent(self):
        store = LoroDocumentStore()
        async with SyncSession(store) as a:
            unsubscribe = a.listen("r1", lambda s: None)
            assert a.health().listener_count == 1
            unsubscribe()
            unsubscribe()
            assert a.health().listener_count == 0
            assert a.state("r1") is None

    @pytest.mark.anyio
    async def test_listen_replaces_previous_listener(self):
        store = LoroDocumentStore()
        first = []
        second = []
        async with SyncSession(store) as a, SyncSession(store) as b:
            await a.join("r1", "alice")
            await b.join("r1", "bob")
            stale = b.listen("r1", first.append)
            b.listen("r1", second.append)
            stale()
            assert b.health().listener_count == 1
            await anyio.sleep(0.05)
            await a.set_track("r1", SONG)
            await wait_for(lambda: second)
        assert first == []

    @pytest.mark.anyio
    async def test_missing_room_is_reported(self):
        seen = []
        async with SyncSession(LoroDocumentStore()) as a:
            a.listen("ghost", seen.append)
            await wait_for(lambda: seen)
        assert seen == [None]

    @pytest.mark.anyio
    async def test_health_and_reset(self):
        store = LoroDocumentStore()
        async with SyncSession(store) as a:
            assert a.health().healthy is False
            await a.join("r1", "alice")
            a.listen("r1", lambda s: None)
            health = a.health()
            assert health.healthy is True
            assert health.active_rooms == ["r1"]
            assert health.listened_rooms == ["r1"]

            await a.reset()
            health = a.health()
            assert health.healthy is False
            assert health.active_rooms == []
            assert health.listener_count == 0
            assert a.state("r1") is None
        # reset never touches the store
        assert (await room_doc(store, "r1")).participants == ("alice",)

    @pytest.mark.anyio
    async def test_subscription_lost_is_reported(self):
        store = LoroDocumentStore()
        config = SyncConfig(backoff=BackoffConfig(retries=2, base=0.01, ceiling=0.02))
        lost = []
        async with SyncSession(store, config=config) as a:
            a.on(LifecycleEvent.ON_SUBSCRIPTION_LOST, lambda s, room, exc: lost.append((room, exc)))
            a.listen("r1", lambda s: None)
            await anyio.sleep(0.05)
            store.close()
            await wait_for(lambda: lost)
            await wait_for(lambda: a.health().listener_count == 0)
            store.open()
        assert lost[0][0] == "r1"
        assert isinstance(lost[0][1], SubscriptionLost)

    @pytest.mark.anyio
    async def test_calibrate_records_offset(self):
        store = LoroDocumentStore(skew_ms=30_000)
        async with SyncSession(store) as a:
            sample = await a.calibrate()
        assert sample.offset_ms >= 29_000
        assert a.estimator.offset_ms >= 29_000
