# tunecast/track.py
from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import Optional


class SourceKind(enum.Enum):
    PROVIDER_ASSET = "provider"
    LIVE_STREAM = "live"
    UPLOADED_FILE = "upload"


@dataclass(frozen=True)
class Playlist:
    title: str
    source: str


@dataclass(frozen=True)
class TrackMetadata:
    url: str
    title: str
    artist: str = ""
    length_seconds: int = 0     # sin el outro recortado
    offset_seconds: int = 0     # intro a saltear
    is_live: bool = False
    thumbnail_url: Optional[str] = None
    playlist: Optional[Playlist] = None
    source_kind: SourceKind = SourceKind.PROVIDER_ASSET

    def queued(self, channel_id: int, requested_by: int) -> "QueuedTrack":
        return QueuedTrack(
            url=self.url,
            title=self.title,
            artist=self.artist,
            length_seconds=self.length_seconds,
            offset_seconds=self.offset_seconds,
            is_live=self.is_live,
            thumbnail_url=self.thumbnail_url,
            playlist=self.playlist,
            source_kind=self.source_kind,
            added_in_channel_id=channel_id,
            requested_by_user_id=requested_by,
        )

    @property
    def display(self) -> str:
        return f"{self.title} - {self.artist}" if self.artist else self.title


@dataclass(frozen=True)
class QueuedTrack(TrackMetadata):
    added_in_channel_id: int = 0
    requested_by_user_id: int = 0

    def copy(self) -> "QueuedTrack":
        return replace(self)


def track_to_dict(track: TrackMetadata) -> dict:
    return {
        "url": track.url,
        "title": track.title,
        "artist": track.artist,
        "length_seconds": track.length_seconds,
        "offset_seconds": track.offset_seconds,
        "is_live": track.is_live,
        "thumbnail_url": track.thumbnail_url,
        "playlist": {"title": track.playlist.title, "source": track.playlist.source} if track.playlist else None,
        "source_kind": track.source_kind.value,
    }


def track_from_dict(data: dict) -> TrackMetadata:
    playlist = data.get("playlist")
    return TrackMetadata(
        url=data["url"],
        title=data.get("title") or "",
        artist=data.get("artist") or "",
        length_seconds=int(data.get("length_seconds") or 0),
        offset_seconds=int(data.get("offset_seconds") or 0),
        is_live=bool(data.get("is_live")),
        thumbnail_url=data.get("thumbnail_url"),
        playlist=Playlist(**playlist) if playlist else None,
        source_kind=SourceKind(data.get("source_kind") or SourceKind.PROVIDER_ASSET.value),
    )
