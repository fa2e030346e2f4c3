"""UpdateEnvelope: tags outbound writes so the writer can recognize its own echo."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from roomsync._util.ids import generate_update_id

UPDATE_ID_FIELD = "updateId"


@dataclass
class UpdateEnvelope:
    """A partial room update plus the unique ID identifying this write."""

    payload: dict[str, Any]
    update_id: str = field(default_factory=generate_update_id)

    @classmethod
    def build(cls, payload: dict[str, Any], now_ms: int | None = None) -> UpdateEnvelope:
        return cls(payload=dict(payload), update_id=generate_update_id(now_ms))

    def to_partial(self) -> dict[str, Any]:
        """Render the payload as a store partial update carrying the update ID."""
        if UPDATE_ID_FIELD in self.payload:
            raise ValueError(f"payload must not set {UPDATE_ID_FIELD!r} directly")
        partial = dict(self.payload)
        partial[UPDATE_ID_FIELD] = self.update_id
        return partial
