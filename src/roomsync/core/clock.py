"""Clock offset and latency estimation against the store's server clock."""

from __future__ import annotations

import logging
import statistics
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from roomsync.store.base import SERVER_TIMESTAMP

if TYPE_CHECKING:
    from roomsync.store.base import DocumentStore

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ClockSample:
    t0: int  # local time before the calibration write
    server_ms: int  # server timestamp assigned to the calibration write
    t1: int  # local time after reading the calibration document back

    @property
    def round_trip_ms(self) -> int:
        return self.t1 - self.t0

    @property
    def latency_ms(self) -> float:
        """Estimated one-way latency."""
        return (self.t1 - self.t0) / 2.0

    @property
    def offset_ms(self) -> float:
        """server_time - local_time. Positive means the server clock is ahead."""
        return float(self.server_ms - self.t1)


class ClockEstimator:
    """Maintains a rolling window of clock samples and computes offset/latency estimates."""

    WINDOW = 8
    OUTLIER_FACTOR = 2.0

    def __init__(self, window: int | None = None, clock: Callable[[], int] = now_ms) -> None:
        self._window = window or self.WINDOW
        self._clock = clock
        self._samples: list[ClockSample] = []
        self._offset_ms = 0.0
        self._latency_ms = 0.0

    def add_sample(self, sample: ClockSample) -> None:
        self._samples.append(sample)
        if len(self._samples) > self._window:
            self._samples.pop(0)
        self._recompute()

    def _recompute(self) -> None:
        if not self._samples:
            return
        good = self._samples
        if len(self._samples) >= 3:
            median_rtt = statistics.median(s.round_trip_ms for s in self._samples)
            good = [s for s in self._samples if s.round_trip_ms <= median_rtt * self.OUTLIER_FACTOR]
        if good:
            self._offset_ms = statistics.median(s.offset_ms for s in good)
            self._latency_ms = statistics.median(s.latency_ms for s in good)

    @property
    def offset_ms(self) -> float:
        return self._offset_ms

    @property
    def latency_ms(self) -> float:
        return self._latency_ms

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    def server_now_ms(self, local_ms: int | None = None) -> float:
        """Convert local time to estimated server time."""
        if local_ms is None:
            local_ms = self._clock()
        return local_ms + self._offset_ms

    async def calibrate(self, store: DocumentStore, doc_id: str) -> ClockSample:
        """Write a calibration document, read back its server timestamp and record the sample."""
        t0 = self._clock()
        await store.set(doc_id, {"sentAt": t0, "updatedAt": SERVER_TIMESTAMP}, merge=True)
        doc = await store.get(doc_id)
        t1 = self._clock()
        server_ms = (doc or {}).get("updatedAt")
        if not isinstance(server_ms, (int, float)):
            raise ValueError(f"calibration document {doc_id!r} has no server timestamp")
        sample = ClockSample(t0=t0, server_ms=int(server_ms), t1=t1)
        self.add_sample(sample)
        logger.debug(
            "clock calibrated: offset=%.1fms latency=%.1fms (samples=%s)",
            self._offset_ms,
            self._latency_ms,
            len(self._samples),
        )
        return sample

    def project(self, reported_position: float, reported_server_ms: int | None, *, is_playing: bool = True) -> float:
        return project_position(
            reported_position,
            reported_server_ms,
            self._clock(),
            self._offset_ms,
            is_playing=is_playing,
        )


def project_position(
    reported_position: float,
    reported_server_ms: int | None,
    local_now_ms: int,
    clock_offset_ms: float = 0.0,
    *,
    is_playing: bool = True,
) -> float:
    """Project a position stamped with server time forward to now.

    The local clock is shifted onto the server clock before measuring elapsed
    time. ``clock_offset_ms`` is server time minus local time, as measured by
    ``ClockSample.offset_ms``, so it is added to ``local_now_ms``. Paused rooms
    don't advance, and negative elapsed time counts as zero.
    """
    if not is_playing or reported_server_ms is None:
        return reported_position
    elapsed_ms = local_now_ms + clock_offset_ms - reported_server_ms
    return reported_position + max(0.0, elapsed_ms) / 1000.0


def needs_seek(local_position: float, target_position: float, threshold: float = 2.0) -> bool:
    """Whether the local player is far enough off to warrant a seek."""
    return abs(local_position - target_position) > threshold
