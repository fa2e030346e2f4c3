"""roomsync: shared playback-state synchronization for listening rooms."""

from roomsync._version import __version__
from roomsync.api.lifecycle import LifecycleEvent
from roomsync.api.session import SessionHealth, SyncSession
from roomsync.config import BackoffConfig, SyncConfig
from roomsync.core.clock import needs_seek, project_position
from roomsync.core.types import RoomSnapshot, Track
from roomsync.errors import (
    InvalidArgument,
    RoomSyncError,
    StaleWrite,
    StoreUnavailable,
    SubscriptionLost,
)
from roomsync.store.base import DocumentStore
from roomsync.store.loro_store import LoroDocumentStore

__all__ = [
    "__version__",
    "BackoffConfig",
    "DocumentStore",
    "InvalidArgument",
    "LifecycleEvent",
    "LoroDocumentStore",
    "RoomSnapshot",
    "RoomSyncError",
    "SessionHealth",
    "StaleWrite",
    "StoreUnavailable",
    "SubscriptionLost",
    "SyncConfig",
    "SyncSession",
    "Track",
    "needs_seek",
    "project_position",
]
