"""DeliveryQueue: serializes change deliveries for one room."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable

import anyio

from roomsync.core.detector import ChangeDetector, Decision
from roomsync.core.types import RoomSnapshot

logger = logging.getLogger(__name__)

ChangeHandler = Callable[["RoomSnapshot | None"], Any]


class DeliveryQueue:
    """Latest-wins mailbox between the change detector and the caller's callback.

    At most one delivery per room is in flight. While a delivery is pending,
    newer notifications replace its payload, so a burst that arrives
    before the queue task runs is delivered once with the last value. A deferred
    delivery goes out one debounce window after it was first deferred.
    """

    def __init__(
        self,
        detector: ChangeDetector,
        handler: ChangeHandler,
        *,
        clock: Callable[[], int],
        debounce_ms: int = 1000,
        prepare: Callable[[RoomSnapshot], RoomSnapshot] | None = None,
    ) -> None:
        self._detector = detector
        self._handler = handler
        self._clock = clock
        self._debounce_s = debounce_ms / 1000.0
        self._prepare = prepare
        self._pending: RoomSnapshot | None = None
        self._has_pending = False
        self._deadline: float | None = None
        self._wakeup = anyio.Event()
        self._running = False
        self._delivered = 0

    @property
    def has_pending(self) -> bool:
        return self._has_pending

    @property
    def delivered_count(self) -> int:
        return self._delivered

    def offer(self, snapshot: RoomSnapshot | None) -> Decision:
        """Feed one raw notification from the subscription."""
        now = self._clock()
        if self._has_pending:
            if snapshot is not None and self._detector.is_echo(snapshot, now):
                return Decision.IGNORE
            self._detector.state.first_snapshot = False
            # the deadline set by the first deferral never moves
            self._pending = snapshot
            logger.debug("replacing pending delivery for room %s", self._detector.state.room_id)
            return Decision.DEFER

        decision = self._detector.evaluate(snapshot, now)
        if decision is Decision.IGNORE:
            return decision
        self._pending = snapshot
        self._has_pending = True
        self._deadline = anyio.current_time() + self._debounce_s if decision is Decision.DEFER else None
        self._wakeup.set()
        return decision

    async def _deliver(self, snapshot: RoomSnapshot | None) -> None:
        self._detector.mark_delivered(snapshot, self._clock())
        if snapshot is not None and self._prepare is not None:
            snapshot = self._prepare(snapshot)
        self._delivered += 1
        try:
            result = self._handler(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("change callback failed for room %s", self._detector.state.room_id)

    async def run(self, *, task_status: anyio.abc.TaskStatus = anyio.TASK_STATUS_IGNORED) -> None:
        self._running = True
        task_status.started()
        try:
            while self._running:
                await self._wakeup.wait()
                self._wakeup = anyio.Event()
                while self._has_pending:
                    if self._deadline is None:
                        # let the rest of a synchronous burst land first
                        await anyio.sleep(0)
                    while self._deadline is not None and anyio.current_time() < self._deadline:
                        await anyio.sleep(self._deadline - anyio.current_time())
                    snapshot = self._pending
                    self._pending = None
                    self._has_pending = False
                    self._deadline = None
                    await self._deliver(snapshot)
        finally:
            self._running = False

    def stop(self) -> None:
        self._running = False
        self._pending = None
        self._has_pending = False
        self._deadline = None
        self._wakeup.set()
