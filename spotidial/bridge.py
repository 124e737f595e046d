# SpotiDial Bridge
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Bridge: ties the dial (MQTT) to the Spotify account.

Startup, in order:
    auth.initialize → transport.start → command handler → change handler → poller

Inbound commands are decoded, queued and dispatched one at a time through a
lookup table.  Track changes publish the status (retained) and then, if the
track has a cover, the transcoded artwork (retained).  A failing command or
poll is logged and forgotten; it never takes the bridge down.

Shutdown always runs, even when startup failed halfway.
"""

import asyncio
import logging
import re
import signal

from .artwork import ArtworkPipeline
from .detector import ChangeDetector, Poller
from .errors import MalformedCommandError, TransportError
from .lib.transport import Transport
from .lib.watchdog import sd_notify, watchdog_loop
from .models import Command
from .spotify.auth import AuthSession
from .spotify.gateway import PlaybackGateway
from .spotify.tokens import TokenStore

log = logging.getLogger(__name__)

VOLUME_STEP = 5
_VOLUME_RE = re.compile(r"^[+-]?[0-9]+$", re.ASCII)


def parse_volume(parameter) -> int:
    if parameter is None or not str(parameter).strip():
        raise MalformedCommandError("set_volume needs a volume level")
    text = str(parameter).strip()
    if not _VOLUME_RE.match(text):
        raise MalformedCommandError(f"set_volume level {parameter!r} is not an integer")
    return int(text)


class Bridge:
    """Owns the auth session, gateway, transport, detector and poller."""

    def __init__(self, settings, *, auth=None, gateway=None, transport=None,
                 artwork=None, detector=None):
        self.settings = settings
        self.auth = auth or AuthSession(
            settings.spotify, TokenStore(settings.spotify.token_file or None))
        self.gateway = gateway or PlaybackGateway(self.auth)
        self.transport = transport or Transport(settings.mqtt)
        self.artwork = artwork or ArtworkPipeline(self.gateway, settings.artwork)
        self.detector = detector or ChangeDetector()
        self.poller: Poller | None = None

        self._commands: asyncio.Queue = asyncio.Queue()
        self._poll_task: asyncio.Task | None = None
        self._dispatch_task: asyncio.Task | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._stopped = False

        self.dispatch_table = {
            "play": self._play,
            "pause": self._pause,
            "next": self._next,
            "previous": self._previous,
            "volume_up": self._volume_up,
            "volume_down": self._volume_down,
            "set_volume": self._set_volume,
            "change_playlist": self._change_playlist,
            "change_album": self._change_album,
            "get_playlists": self._get_playlists,
            "get_albums": self._get_albums,
        }

    # -- Lifecycle --

    async def start(self):
        """Run the startup sequence.  AuthError / TransportError are fatal."""
        log.info("Starting SpotiDial bridge...")
        await self.auth.initialize()
        await self.gateway.start()
        await self.transport.start()

        self.transport.set_command_handler(self.enqueue)
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())

        spotify = self.settings.spotify
        self.poller = Poller(
            self.gateway, self.detector, self.handle_track_changed,
            interval=spotify.poll_interval_ms / 1000,
            error_backoff=spotify.error_backoff_ms / 1000,
        )
        self._poll_task = asyncio.create_task(self.poller.run())

        sd_notify("READY=1")
        self._watchdog_task = asyncio.create_task(watchdog_loop())
        log.info("SpotiDial bridge started")

    async def stop(self):
        """Tear everything down.  Safe to call after a partial start."""
        if self._stopped:
            return
        self._stopped = True
        log.info("Stopping SpotiDial bridge...")
        sd_notify("STOPPING=1")

        for task in (self._poll_task, self._dispatch_task, self._watchdog_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    log.warning("Background task ended with error: %s", e)

        for name, closer in (("transport", self.transport.stop),
                             ("gateway", self.gateway.close),
                             ("auth", self.auth.close)):
            try:
                await closer()
            except Exception as e:
                log.warning("Error stopping %s: %s", name, e)
        log.info("SpotiDial bridge stopped")

    async def run(self, stop_event: asyncio.Event | None = None):
        """Convenience entry-point: start + wait for signal + stop."""
        stop_event = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, stop_event.set)
                installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                pass
        # A signal during startup (browser authorization, broker connect)
        # cancels startup instead of waiting for it to time out.
        start_task = asyncio.create_task(self.start())
        waiter = asyncio.create_task(stop_event.wait())
        try:
            await asyncio.wait({start_task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if not start_task.done():
                log.info("Shutdown requested during startup")
                return
            start_task.result()
            if not waiter.done():
                await asyncio.wait({waiter, self._poll_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not start_task.done():
                start_task.cancel()
                try:
                    await start_task
                except asyncio.CancelledError:
                    pass
            await self.stop()
            for sig in installed:
                loop.remove_signal_handler(sig)

    @property
    def track_id(self) -> str | None:
        return self.detector.track_id

    # -- Inbound commands --

    async def enqueue(self, data):
        """Transport callback: decode and queue one command payload."""
        try:
            command = Command.from_payload(data)
        except MalformedCommandError as e:
            log.warning("Ignoring malformed command %r: %s", data, e)
            return
        self._commands.put_nowait(command)

    async def _dispatch_loop(self):
        while True:
            command = await self._commands.get()
            try:
                await self.dispatch(command)
            finally:
                self._commands.task_done()

    async def dispatch(self, command: Command):
        """Run one command.  Never raises."""
        handler = self.dispatch_table.get(command.name.lower())
        if handler is None:
            log.warning("Unknown command: %s", command.name)
            return
        log.info("Processing command: %s %s", command.name, command.parameter or "")
        try:
            await handler(command.parameter)
        except MalformedCommandError as e:
            log.warning("Ignoring %s: %s", command.name, e)
        except Exception:
            log.exception("Error handling command: %s", command.name)

    async def _play(self, _):
        await self.gateway.play()

    async def _pause(self, _):
        await self.gateway.pause()

    async def _next(self, _):
        await self.gateway.skip_next()

    async def _previous(self, _):
        await self.gateway.skip_previous()

    async def _volume_up(self, _):
        await self.gateway.change_volume(VOLUME_STEP)

    async def _volume_down(self, _):
        await self.gateway.change_volume(-VOLUME_STEP)

    async def _set_volume(self, parameter):
        await self.gateway.set_volume(parse_volume(parameter))

    async def _change_playlist(self, parameter):
        await self._switch("playlist", parameter)

    async def _change_album(self, parameter):
        await self._switch("album", parameter)

    async def _switch(self, kind, parameter):
        item_id = (parameter or "").strip()
        if not item_id:
            log.warning("change_%s without an id, ignored", kind)
            return
        await self.gateway.switch_context(kind, item_id)

    async def _get_playlists(self, _):
        playlists = await self.gateway.list_playlists()
        await self.transport.publish_playlists(playlists)

    async def _get_albums(self, _):
        albums = await self.gateway.list_albums()
        await self.transport.publish_albums(albums)

    # -- Track changes --

    async def handle_track_changed(self, snapshot):
        """Publish status, then artwork.  Each stage fails on its own."""
        try:
            await self.transport.publish_status(snapshot)
        except TransportError as e:
            log.error("Error publishing song info: %s", e)

        if not snapshot.artwork_url:
            return
        try:
            image = await self.artwork.render(snapshot.artwork_url)
            if image is None:
                log.warning("No artwork for %s, image not published", snapshot.track_id)
                return
            await self.transport.publish_image(image)
        except Exception as e:
            log.error("Error publishing artwork: %s", e)
