"""Tunables for the synchronization engine."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class BackoffConfig:
    retries: int = 5
    base: float = 0.2
    ceiling: float = 5.0

    def delay(self, attempt: int) -> float:
        return min(self.base * (2**attempt), self.ceiling)


@dataclass
class SyncConfig:
    # outbound write floors per update kind
    track_interval_ms: int = 500
    playback_interval_ms: int = 1000
    position_interval_ms: int = 5000
    # inbound change detection
    drift_threshold_s: float = 2.0
    position_sync_gap_ms: int = 5000
    debounce_ms: int = 1000
    # echo bookkeeping
    pending_update_ttl_ms: int = 10_000
    pending_update_limit: int = 64
    # clock estimation
    clock_window: int = 8
    recalibrate_interval_s: float = 60.0
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
