"""LoroDocumentStore: an in-process real-time document store backed by a LoroDoc."""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable
from urllib.parse import quote

import anyio.lowlevel
from loro import ExportMode, LoroDoc, LoroMap, VersionVector

from roomsync.errors import StoreUnavailable
from roomsync.store.base import (
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    ChangeCallback,
    Document,
    DocumentNotFound,
    DocumentStore,
    ErrorCallback,
)

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(eq=False)
class _Listener:
    doc_id: str
    callback: ChangeCallback
    on_error: ErrorCallback | None
    active: bool = True


class LoroDocumentStore(DocumentStore):
    """Stores each document as a root LoroMap, giving field-level last-writer-wins merges.

    Replicas converge by exchanging ``export_updates``/``import_updates`` blobs.
    ``close()`` simulates losing the connection: pending listeners receive
    ``StoreUnavailable`` and every call fails until ``open()``.
    """

    PREFIX = "doc:"

    def __init__(
        self,
        peer_id: int | None = None,
        *,
        clock: Callable[[], int] = _now_ms,
        skew_ms: int = 0,
    ) -> None:
        self._doc = LoroDoc()
        if peer_id is not None:
            self._doc.peer_id = peer_id
        self._lock = RLock()
        self._clock = clock
        self._skew_ms = skew_ms
        self._listeners: list[_Listener] = []
        self._available = True

    @property
    def peer_id(self) -> int:
        return self._doc.peer_id

    @property
    def available(self) -> bool:
        return self._available

    def _map(self, doc_id: str) -> LoroMap:
        # root container names may not contain "/" or NUL
        return self._doc.get_map(self.PREFIX + quote(doc_id, safe=""))

    def _server_ms(self) -> int:
        return self._clock() + self._skew_ms

    def _ensure_available(self) -> None:
        if not self._available:
            raise StoreUnavailable("document store is closed")

    def _read(self, doc_id: str) -> Document | None:
        m = self._map(doc_id)
        if len(m) == 0:
            return None
        return copy.deepcopy(m.get_deep_value())

    def _resolve(self, current: Document, partial: Document, stamp: int) -> Document:
        resolved: Document = {}
        for key, value in partial.items():
            if value is SERVER_TIMESTAMP:
                resolved[key] = stamp
            elif isinstance(value, (ArrayUnion, ArrayRemove)):
                resolved[key] = value.apply(current.get(key))
            else:
                resolved[key] = self._normalize_value(value)
        return resolved

    def _apply(self, doc_id: str, partial: Document, *, replace: bool) -> None:
        m = self._map(doc_id)
        current = m.get_deep_value() if len(m) else {}
        resolved = self._resolve(current, partial, self._server_ms())
        if replace:
            for key in list(m.keys()):
                if key not in resolved:
                    m.delete(key)
        for key, value in resolved.items():
            if not self._is_supported_value(value):
                raise TypeError(f"unsupported value type for document field '{doc_id}.{key}': {type(value).__name__}")
            m.insert(key, value)
        self._doc.commit()

    def _notify(self, doc_ids: set[str]) -> None:
        with self._lock:
            targets = [(l, self._read(l.doc_id)) for l in self._listeners if l.active and l.doc_id in doc_ids]
        for listener, doc in targets:
            if not listener.active:
                continue
            try:
                listener.callback(doc)
            except Exception:
                logger.exception("document listener for %s failed", listener.doc_id)

    async def get(self, doc_id: str) -> Document | None:
        await anyio.lowlevel.checkpoint()
        self._ensure_available()
        with self._lock:
            return self._read(doc_id)

    async def set(self, doc_id: str, data: Document, merge: bool = False) -> None:
        await anyio.lowlevel.checkpoint()
        self._ensure_available()
        with self._lock:
            self._apply(doc_id, data, replace=not merge)
        self._notify({doc_id})

    async def update(self, doc_id: str, partial: Document) -> None:
        await anyio.lowlevel.checkpoint()
        self._ensure_available()
        with self._lock:
            if len(self._map(doc_id)) == 0:
                raise DocumentNotFound(doc_id)
            self._apply(doc_id, partial, replace=False)
        self._notify({doc_id})

    def on_change(
        self,
        doc_id: str,
        callback: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> Callable[[], None]:
        self._ensure_available()
        listener = _Listener(doc_id=doc_id, callback=callback, on_error=on_error)
        with self._lock:
            self._listeners.append(listener)
            initial = self._read(doc_id)

        def unsubscribe() -> None:
            listener.active = False
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        callback(initial)
        return unsubscribe

    async def server_now(self) -> int:
        await anyio.lowlevel.checkpoint()
        self._ensure_available()
        return self._server_ms()

    def close(self) -> None:
        """Drop every listener with ``StoreUnavailable`` and refuse further calls."""
        with self._lock:
            self._available = False
            listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener.active = False
            if listener.on_error is not None:
                try:
                    listener.on_error(StoreUnavailable("document store connection lost"))
                except Exception:
                    logger.exception("error callback for %s failed", listener.doc_id)

    def open(self) -> None:
        self._available = True

    def clone_oplog_vv(self) -> VersionVector:
        """Return a copy of the current oplog version vector."""
        with self._lock:
            return VersionVector.decode(self._doc.oplog_vv.encode())

    def export_snapshot(self) -> bytes:
        with self._lock:
            return self._doc.export(ExportMode.Snapshot())

    def export_updates(self, since: VersionVector | None = None) -> bytes:
        if since is None:
            since = VersionVector()
        with self._lock:
            return self._doc.export(ExportMode.Updates(since))

    def import_updates(self, data: bytes) -> None:
        """Merge a replica's updates and notify listeners whose documents changed."""
        with self._lock:
            watched = {l.doc_id for l in self._listeners}
            before = {doc_id: self._read(doc_id) for doc_id in watched}
            self._doc.import_batch([data])
            changed = {doc_id for doc_id in watched if self._read(doc_id) != before[doc_id]}
        if changed:
            self._notify(changed)

    @classmethod
    def _is_supported_value(cls, value: Any) -> bool:
        if value is None or isinstance(value, (bool, int, float, str, bytes)):
            return True
        if isinstance(value, list):
            return all(cls._is_supported_value(v) for v in value)
        if isinstance(value, dict):
            return all(isinstance(k, str) and cls._is_supported_value(v) for k, v in value.items())
        return False

    @classmethod
    def _normalize_value(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [cls._normalize_value(v) for v in value]
        if isinstance(value, dict):
            return {k: cls._normalize_value(v) for k, v in value.items()}
        return value
