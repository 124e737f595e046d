from __future__ import annotations

import contextlib
import socket

from aiohttp import web
from aiohttp.test_utils import TestServer

from spotidial.errors import TransportError
from spotidial.lib.config import ArtworkSettings, MqttSettings, Settings, SpotifySettings
from spotidial.models import PlaybackSnapshot


def get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def make_settings(**spotify) -> Settings:
    spotify.setdefault("client_id", "client-1234567890")
    spotify.setdefault("poll_interval_ms", 10)
    spotify.setdefault("error_backoff_ms", 50)
    return Settings(
        mqtt=MqttSettings(connect_timeout=1.0),
        spotify=SpotifySettings(**spotify),
        artwork=ArtworkSettings(),
    )


def snapshot(track_id: str, **kwargs) -> PlaybackSnapshot:
    kwargs.setdefault("track_name", f"Track {track_id}")
    kwargs.setdefault("artist_name", "Artist")
    return PlaybackSnapshot(track_id=track_id, **kwargs)


@contextlib.asynccontextmanager
async def serve(app: web.Application):
    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


class FakeAuth:
    def __init__(self):
        self.invalidated = 0
        self.closed = False
        self.initialized = False
        self.fail_with: Exception | None = None

    async def initialize(self):
        if self.fail_with:
            raise self.fail_with
        self.initialized = True

    async def get_token(self):
        return "access-token"

    def invalidate(self):
        self.invalidated += 1

    async def close(self):
        self.closed = True


class FakeTransport:
    def __init__(self, *, fail_start: Exception | None = None):
        self.fail_start = fail_start
        self.started = False
        self.stopped = False
        self.handler = None
        self.fail_status = False
        self.fail_image = False
        self.status: list = []
        self.images: list = []
        self.playlists: list = []
        self.albums: list = []

    def set_command_handler(self, callback):
        self.handler = callback

    async def start(self):
        if self.fail_start:
            raise self.fail_start
        self.started = True

    async def stop(self):
        self.stopped = True

    @property
    def published(self) -> int:
        return len(self.status) + len(self.images) + len(self.playlists) + len(self.albums)

    async def publish_status(self, snap):
        if self.fail_status:
            raise TransportError("status publish failed")
        self.status.append(snap)

    async def publish_image(self, image):
        if self.fail_image:
            raise TransportError("image publish failed")
        self.images.append(image)

    async def publish_playlists(self, playlists):
        self.playlists.append(playlists)

    async def publish_albums(self, albums):
        self.albums.append(albums)


class FakeGateway:
    """Records calls; get_current_playback replays a scripted sequence."""

    def __init__(self, polls=None):
        self.calls: list = []
        self.polls = list(polls or [])
        self.artwork = b""
        self.closed = False
        self.started = False
        self.playlists: list = []
        self.albums: list = []

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    async def get_current_playback(self):
        if not self.polls:
            return None
        item = self.polls.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def play(self):
        self.calls.append(("play",))

    async def pause(self):
        self.calls.append(("pause",))

    async def skip_next(self):
        self.calls.append(("skip_next",))

    async def skip_previous(self):
        self.calls.append(("skip_previous",))

    async def set_volume(self, percent):
        self.calls.append(("set_volume", percent))

    async def change_volume(self, delta):
        self.calls.append(("change_volume", delta))

    async def switch_context(self, kind, item_id):
        self.calls.append(("switch_context", f"spotify:{kind}:{item_id}"))

    async def list_playlists(self):
        self.calls.append(("list_playlists",))
        return self.playlists

    async def list_albums(self):
        self.calls.append(("list_albums",))
        return self.albums

    async def fetch_artwork_bytes(self, url):
        self.calls.append(("fetch_artwork_bytes", url))
        return self.artwork or None
