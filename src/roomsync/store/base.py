"""DocumentStore ABC and field transforms for real-time document stores."""

from __future__ import annotations

import abc
from typing import Any, Callable

Document = dict[str, Any]
ChangeCallback = Callable[["Document | None"], None]
ErrorCallback = Callable[[Exception], None]


class _ServerTimestamp:
    """Sentinel replaced by the store's clock when a write is applied."""

    _instance: _ServerTimestamp | None = None

    def __new__(cls) -> _ServerTimestamp:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class ArrayUnion:
    """Append each value not already present, preserving existing order."""

    def __init__(self, *values: Any) -> None:
        self.values = list(values)

    def apply(self, current: Any) -> list[Any]:
        result = list(current) if isinstance(current, list) else []
        for value in self.values:
            if value not in result:
                result.append(value)
        return result

    def __repr__(self) -> str:
        return f"ArrayUnion({self.values!r})"


class ArrayRemove:
    """Remove every occurrence of each value."""

    def __init__(self, *values: Any) -> None:
        self.values = list(values)

    def apply(self, current: Any) -> list[Any]:
        if not isinstance(current, list):
            return []
        return [v for v in current if v not in self.values]

    def __repr__(self) -> str:
        return f"ArrayRemove({self.values!r})"


class DocumentNotFound(LookupError):
    """A partial update targeted a document that does not exist."""

    def __init__(self, doc_id: str) -> None:
        super().__init__(f"document {doc_id!r} not found")
        self.doc_id = doc_id


class DocumentStore(abc.ABC):
    """Abstract real-time document store: get/set/update, change notifications, server clock.

    Implementations raise ``roomsync.errors.StoreUnavailable`` when unreachable.
    """

    @abc.abstractmethod
    async def get(self, doc_id: str) -> Document | None: ...

    @abc.abstractmethod
    async def set(self, doc_id: str, data: Document, merge: bool = False) -> None: ...

    @abc.abstractmethod
    async def update(self, doc_id: str, partial: Document) -> None: ...

    @abc.abstractmethod
    def on_change(
        self,
        doc_id: str,
        callback: ChangeCallback,
        on_error: ErrorCallback | None = None,
    ) -> Callable[[], None]:
        """Deliver the current document now, then again on every change.

        Returns a function that cancels the registration.
        """

    @abc.abstractmethod
    async def server_now(self) -> int: ...
