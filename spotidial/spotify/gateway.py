# SpotiDial Bridge
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Spotify Web API wrapper: the small capability surface the bridge needs.

Every call fetches its access token from AuthSession first, so an expired
grant is renewed transparently.  "No active device" answers from the player
endpoints are logged and ignored; anything else unexpected raises RemoteError.
"""

import asyncio
import json
import logging

import aiohttp

from ..errors import RecoverableDeviceError, RemoteError
from ..models import AlbumInfo, PlaybackSnapshot, PlaylistInfo

log = logging.getLogger(__name__)

API_BASE = "https://api.spotify.com/v1"
PAGE_LIMIT = 50
DEFAULT_VOLUME = 50
CONTEXT_KINDS = ("playlist", "album")


def clamp_volume(percent: int) -> int:
    return max(0, min(100, int(percent)))


def context_uri(kind: str, item_id: str) -> str:
    if kind not in CONTEXT_KINDS:
        raise ValueError(f"unsupported context kind {kind!r}")
    return f"spotify:{kind}:{item_id}"


def _error_details(status, body):
    """Pull (message, reason) out of a Spotify error body."""
    message, reason = f"HTTP {status}", None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            message = err.get("message") or message
            reason = err.get("reason")
        elif isinstance(err, str):
            message = body.get("error_description") or err
    elif body:
        message = str(body)[:200]
    return message, reason


class PlaybackGateway:
    """Playback control, now-playing and library listing for one account."""

    def __init__(self, auth, *, session: aiohttp.ClientSession | None = None,
                 api_base: str = API_BASE, timeout: float = 10.0):
        self.auth = auth
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def start(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": "SpotiDial-Bridge/1.0"})

    async def close(self):
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    # -- HTTP plumbing --

    async def _request(self, method, path, *, params=None, json_body=None):
        """Authenticated Web API call.  Returns decoded JSON, or None if empty."""
        if self._session is None:
            await self.start()
        token = await self.auth.get_token()
        url = path if path.startswith("http") else f"{self.api_base}{path}"
        try:
            async with self._session.request(
                method, url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {token}"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                text = await resp.text()
                status = resp.status
        except asyncio.TimeoutError:
            raise RemoteError(f"{method} {path} timed out") from None
        except aiohttp.ClientError as e:
            raise RemoteError(f"{method} {path} failed: {e}") from e

        try:
            body = json.loads(text) if text else None
        except json.JSONDecodeError:
            body = text

        if 200 <= status < 300:
            return body if isinstance(body, dict) else None

        message, reason = _error_details(status, body)
        if status == 401:
            self.auth.invalidate()
        if status == 404 and (reason == "NO_ACTIVE_DEVICE"
                              or "no active device" in message.lower()):
            raise RecoverableDeviceError(message, status=status, reason=reason)
        raise RemoteError(f"{method} {path}: {message}", status=status, reason=reason)

    async def _control(self, method, path, description, *, params=None, json_body=None) -> bool:
        """Fire-and-forget player command.  False if no device was active."""
        try:
            await self._request(method, path, params=params, json_body=json_body)
        except RecoverableDeviceError as e:
            log.warning("%s ignored: no active device (%s)", description, e)
            return False
        log.info("%s", description)
        return True

    # -- Now playing --

    async def get_current_playback(self) -> PlaybackSnapshot | None:
        data = await self._request("GET", "/me/player", params={"additional_types": "track"})
        if not data:
            return None
        return PlaybackSnapshot.from_api(data)

    # -- Transport controls --

    async def play(self):
        return await self._control("PUT", "/me/player/play", "Playback resumed")

    async def pause(self):
        return await self._control("PUT", "/me/player/pause", "Playback paused")

    async def skip_next(self):
        return await self._control("POST", "/me/player/next", "Skipped to next track")

    async def skip_previous(self):
        return await self._control("POST", "/me/player/previous", "Skipped to previous track")

    async def set_volume(self, percent: int) -> int:
        volume = clamp_volume(percent)
        await self._control("PUT", "/me/player/volume", f"Volume set to {volume}%",
                            params={"volume_percent": volume})
        return volume

    async def change_volume(self, delta: int) -> int:
        current = None
        try:
            data = await self._request("GET", "/me/player")
            device = (data or {}).get("device") or {}
            current = device.get("volume_percent")
        except RemoteError as e:
            log.warning("Could not read current volume (%s): assuming %d%%", e, DEFAULT_VOLUME)
        if current is None:
            current = DEFAULT_VOLUME
        return await self.set_volume(clamp_volume(current + delta))

    async def switch_context(self, kind: str, item_id: str):
        uri = context_uri(kind, item_id)
        return await self._control("PUT", "/me/player/play", f"Changed to {kind}: {item_id}",
                                   json_body={"context_uri": uri})

    # -- Library --

    async def _paginate(self, path, mapper) -> list:
        entries = []
        url = f"{self.api_base}{path}?limit={PAGE_LIMIT}"
        while url:
            data = await self._request("GET", url) or {}
            for item in data.get("items") or []:
                if item:
                    entries.append(mapper(item))
            url = data.get("next")
        return entries

    async def list_playlists(self) -> list[PlaylistInfo]:
        playlists = await self._paginate("/me/playlists", PlaylistInfo.from_api)
        log.info("Retrieved %d playlists", len(playlists))
        return playlists

    async def list_albums(self) -> list[AlbumInfo]:
        albums = await self._paginate("/me/albums", AlbumInfo.from_api)
        log.info("Retrieved %d albums", len(albums))
        return albums

    # -- Artwork --

    async def fetch_artwork_bytes(self, url: str | None) -> bytes | None:
        """Plain GET of an artwork URL.  None on any failure, never raises."""
        if not url:
            return None
        if self._session is None:
            await self.start()
        try:
            async with self._session.get(
                url, timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as resp:
                if resp.status != 200:
                    log.warning("Artwork download failed: HTTP %d for %s", resp.status, url)
                    return None
                data = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("Error downloading artwork: %s", e)
            return None
        if not data:
            log.warning("Artwork download returned no data: %s", url)
            return None
        return data
