"""Type definitions for rooms, tracks and snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Any, Callable

from roomsync.errors import InvalidArgument


RoomID = str
ParticipantID = str
Unsubscribe = Callable[[], None]


class UpdateKind(Enum):
    TRACK = auto()
    PLAYBACK = auto()
    POSITION = auto()


@dataclass(frozen=True)
class Track:
    """A playable item. Replaced, never mutated, when the room changes tracks."""

    url: str
    title: str | None = None
    artist: str | None = None
    duration: float | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.url, str) or not self.url:
            raise InvalidArgument("track url is required")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"url": self.url}
        if self.title is not None:
            data["title"] = self.title
        if self.artist is not None:
            data["artist"] = self.artist
        if self.duration is not None:
            data["duration"] = float(self.duration)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Track:
        if not isinstance(data, dict):
            raise InvalidArgument("track must be a mapping")
        duration = data.get("duration")
        if duration is not None:
            try:
                duration = float(duration)
            except (TypeError, ValueError) as exc:
                raise InvalidArgument(f"track duration must be a number of seconds, got {duration!r}") from exc
        return cls(
            url=data.get("url") or "",
            title=data.get("title"),
            artist=data.get("artist"),
            duration=duration,
        )


def _parse_track(value: Any) -> Track | None:
    if not value:
        return None
    try:
        return Track.from_dict(value)
    except InvalidArgument:
        return None


@dataclass(frozen=True)
class RoomSnapshot:
    """Immutable view of a room document as delivered by the store."""

    room_id: RoomID
    created_at: int | None = None
    updated_at: int | None = None
    current_track: Track | None = None
    is_playing: bool = False
    current_position: float = 0.0
    playlist: tuple[Track, ...] = ()
    participants: tuple[ParticipantID, ...] = ()
    leader: ParticipantID | None = None
    update_id: str | None = None
    projected_position: float | None = field(default=None, compare=False)

    @property
    def track_url(self) -> str | None:
        return self.current_track.url if self.current_track else None

    def with_projection(self, position: float) -> RoomSnapshot:
        return replace(self, projected_position=position)

    @classmethod
    def from_document(cls, room_id: RoomID, doc: dict[str, Any]) -> RoomSnapshot:
        playlist = tuple(t for t in (_parse_track(v) for v in doc.get("playlist") or []) if t)
        participants: list[str] = []
        for pid in doc.get("participants") or []:
            if pid not in participants:
                participants.append(pid)
        return cls(
            room_id=room_id,
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
            current_track=_parse_track(doc.get("currentTrack")),
            is_playing=bool(doc.get("isPlaying", False)),
            current_position=float(doc.get("currentPosition") or 0.0),
            playlist=playlist,
            participants=tuple(participants),
            leader=doc.get("leader"),
            update_id=doc.get("updateId"),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "currentTrack": self.current_track.to_dict() if self.current_track else None,
            "isPlaying": self.is_playing,
            "currentPosition": self.current_position,
            "playlist": [t.to_dict() for t in self.playlist],
            "participants": list(self.participants),
            "leader": self.leader,
            "updateId": self.update_id,
        }
