# SpotiDial Bridge
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Data shapes exchanged with the dial and read from the Spotify Web API.

All payload dicts use the camelCase keys the dial firmware expects.
"""

from dataclasses import dataclass

from .errors import MalformedCommandError


def _first_image(images) -> str | None:
    if images:
        return images[0].get("url") or None
    return None


def _artist_names(artists) -> str:
    return ", ".join(a["name"] for a in artists or [] if a.get("name"))


@dataclass(frozen=True)
class PlaybackSnapshot:
    track_id: str
    track_name: str = ""
    artist_name: str = ""
    album_name: str = ""
    duration_ms: int = 0
    progress_ms: int = 0
    is_playing: bool = False
    volume_percent: int | None = None
    artwork_url: str | None = None

    @classmethod
    def from_api(cls, data: dict) -> "PlaybackSnapshot | None":
        """Map a /me/player response.  None unless a track is loaded."""
        item = data.get("item") if data else None
        if not item or item.get("type", "track") != "track" or not item.get("id"):
            return None
        album = item.get("album") or {}
        device = data.get("device") or {}
        return cls(
            track_id=item["id"],
            track_name=item.get("name", ""),
            artist_name=_artist_names(item.get("artists")),
            album_name=album.get("name", ""),
            duration_ms=item.get("duration_ms") or 0,
            progress_ms=data.get("progress_ms") or 0,
            is_playing=bool(data.get("is_playing")),
            volume_percent=device.get("volume_percent"),
            artwork_url=_first_image(album.get("images")),
        )

    def to_payload(self) -> dict:
        return {
            "trackId": self.track_id,
            "trackName": self.track_name,
            "artistName": self.artist_name,
            "albumName": self.album_name,
            "durationMs": self.duration_ms,
            "progressMs": self.progress_ms,
            "isPlaying": self.is_playing,
            "volumePercent": self.volume_percent if self.volume_percent is not None else 0,
            "albumImageUrl": self.artwork_url,
        }


@dataclass(frozen=True)
class CatalogEntry:
    """A playlist or album summary sent to the dial."""
    id: str = ""
    name: str = ""
    track_count: int = 0
    image_url: str | None = None
    uri: str = ""


@dataclass(frozen=True)
class PlaylistInfo(CatalogEntry):
    description: str | None = None
    owner: str = ""
    is_public: bool = False

    @classmethod
    def from_api(cls, pl: dict) -> "PlaylistInfo":
        tracks = pl.get("tracks") or {}
        owner = pl.get("owner") or {}
        return cls(
            id=pl.get("id") or "",
            name=pl.get("name") or "",
            description=pl.get("description") or None,
            track_count=tracks.get("total") or 0,
            image_url=_first_image(pl.get("images")),
            owner=owner.get("display_name") or owner.get("id") or "",
            is_public=bool(pl.get("public")),
            uri=pl.get("uri") or "",
        )

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "trackCount": self.track_count,
            "imageUrl": self.image_url,
            "owner": self.owner,
            "isPublic": self.is_public,
            "uri": self.uri,
        }


@dataclass(frozen=True)
class AlbumInfo(CatalogEntry):
    artist: str = ""
    release_date: str = ""
    album_type: str = ""

    @classmethod
    def from_api(cls, saved: dict) -> "AlbumInfo":
        # /me/albums wraps each album in {"added_at": ..., "album": {...}}
        album = saved.get("album", saved)
        return cls(
            id=album.get("id") or "",
            name=album.get("name") or "",
            artist=_artist_names(album.get("artists")),
            track_count=album.get("total_tracks") or 0,
            image_url=_first_image(album.get("images")),
            release_date=album.get("release_date") or "",
            album_type=album.get("album_type") or "",
            uri=album.get("uri") or "",
        )

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "artist": self.artist,
            "trackCount": self.track_count,
            "imageUrl": self.image_url,
            "releaseDate": self.release_date,
            "albumType": self.album_type,
            "uri": self.uri,
        }


@dataclass(frozen=True)
class Command:
    name: str
    parameter: str | None = None

    @classmethod
    def from_payload(cls, data) -> "Command":
        """Build a command from decoded JSON.  Key names are case-insensitive."""
        if not isinstance(data, dict):
            raise MalformedCommandError(f"command payload must be an object, got {type(data).__name__}")
        fields = {str(k).lower(): v for k, v in data.items()}
        name = fields.get("command")
        if not isinstance(name, str) or not name.strip():
            raise MalformedCommandError("command payload has no 'command' name")
        parameter = fields.get("parameter")
        if parameter is not None and not isinstance(parameter, str):
            if isinstance(parameter, (int, float)) and not isinstance(parameter, bool):
                parameter = str(parameter)
            else:
                raise MalformedCommandError(f"unsupported parameter {parameter!r}")
        return cls(name=name.strip().lower(), parameter=parameter)
