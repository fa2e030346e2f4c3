"""Listening room example: two clients sharing one room in-process.

The host picks a track and later pauses; the guest receives both changes,
projects the position to now and decides whether its player must seek.
"""

import logging

import anyio
from roomsync import LifecycleEvent, LoroDocumentStore, SyncConfig, SyncSession


async def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    store = LoroDocumentStore()
    config = SyncConfig(debounce_ms=200)
    local_position = 0.0
    changes = anyio.Event()

    async with SyncSession(store, config=config) as host, SyncSession(store, config=config) as guest:
        guest.on(
            LifecycleEvent.ON_LEADER_CHANGE,
            lambda session, room, leader: print(f"[guest] leader of {room} is now {leader}"),
        )

        await host.join("lobby", "host")
        await guest.join("lobby", "guest")
        print(f"[host] room members: {(await host.get_room('lobby')).participants}")

        def on_change(snapshot):
            if snapshot is None:
                print("[guest] room is gone")
                return
            track = snapshot.current_track
            print(
                f"[guest] {track.title if track else 'nothing'} "
                f"playing={snapshot.is_playing} at {snapshot.projected_position:.2f}s"
            )
            if guest.needs_seek(local_position, snapshot):
                print(f"[guest] seeking from {local_position:.2f}s")
            if not snapshot.is_playing:
                changes.set()

        guest.listen("lobby", on_change)
        await anyio.sleep(0.1)

        await host.set_track("lobby", {"url": "https://cdn.example/intro.mp3", "title": "Intro", "duration": 180})
        await anyio.sleep(0.5)
        await host.set_playback_state("lobby", False, 12.5)

        with anyio.fail_after(5):
            await changes.wait()

        await host.leave("lobby", "host")
        await guest.leave("lobby", "guest")
        room = await host.get_room("lobby")
        print(f"[host] after everyone left: playing={room.is_playing} leader={room.leader}")


if __name__ == "__main__":
    anyio.run(main)
