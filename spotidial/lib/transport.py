# SpotiDial Bridge
# SPDX-License-Identifier: GPL-3.0-or-later

"""
MQTT transport between the bridge and the dial.

Subscribes to the command topic and publishes status, artwork and library
listings.  The connection is kept alive by a reconnect loop with exponential
backoff; only the very first connection attempt is allowed to fail loudly.

Usage:
    transport = Transport(settings.mqtt)
    transport.set_command_handler(my_callback)
    await transport.start()
    await transport.publish_status(snapshot)
    await transport.stop()
"""

import asyncio
import json
import logging

import aiomqtt

from ..errors import TransportError

logger = logging.getLogger(__name__)

MAX_BACKOFF = 30  # seconds


class Transport:
    """aiomqtt client with auto-reconnect and typed publish helpers."""

    def __init__(self, settings):
        self.settings = settings
        self.topic_commands = settings.command_topic
        self.topic_status = settings.status_topic
        self.topic_image = settings.image_topic
        self.topic_playlists = settings.playlist_topic
        self.topic_albums = settings.album_topic
        self.topic_availability = settings.availability_topic

        # Internal state
        self._client: aiomqtt.Client | None = None
        self._task: asyncio.Task | None = None
        self._ready: asyncio.Future | None = None
        self._command_handler = None
        self._running = False

    @property
    def connected(self) -> bool:
        return self._client is not None

    def set_command_handler(self, callback):
        """Register async callback for incoming commands.

        Callback signature: async def handler(data) -> None, where data is the
        decoded JSON payload.
        """
        self._command_handler = callback

    async def start(self):
        """Connect and subscribe.  Raises TransportError if the first connect fails."""
        self._running = True
        self._ready = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._mqtt_loop())
        logger.info("Connecting to MQTT broker at %s:%d...",
                    self.settings.broker_host, self.settings.broker_port)
        try:
            await asyncio.wait_for(asyncio.shield(self._ready),
                                   timeout=self.settings.connect_timeout)
        except asyncio.TimeoutError:
            await self.stop()
            raise TransportError(
                f"no MQTT connection to {self.settings.broker_host}:{self.settings.broker_port} "
                f"within {self.settings.connect_timeout:.0f}s") from None
        except TransportError:
            await self.stop()
            raise

    async def stop(self):
        """Clean shutdown: mark offline, stop the reconnect loop."""
        self._running = False

        client = self._client
        if client is not None:
            try:
                await client.publish(self.topic_availability, "offline", qos=1, retain=True)
            except aiomqtt.MqttError as e:
                logger.debug("Could not publish offline status: %s", e)

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self._client = None
        logger.info("Disconnected from MQTT broker")

    # --- Connection loop ------------------------------------------------------

    async def _mqtt_loop(self):
        """Connect to MQTT broker with auto-reconnect and exponential backoff."""
        backoff = 1  # seconds

        while self._running:
            try:
                will = aiomqtt.Will(
                    topic=self.topic_availability,
                    payload="offline",
                    qos=1,
                    retain=True,
                )

                async with aiomqtt.Client(
                    hostname=self.settings.broker_host,
                    port=self.settings.broker_port,
                    username=self.settings.username or None,
                    password=self.settings.password or None,
                    identifier=self.settings.client_id,
                    will=will,
                ) as client:
                    self._client = client
                    backoff = 1  # reset on successful connect

                    await client.publish(self.topic_availability, "online", qos=1, retain=True)
                    await client.subscribe(self.topic_commands, qos=1)
                    logger.info("Connected to MQTT broker, subscribed to %s", self.topic_commands)

                    if not self._ready.done():
                        self._ready.set_result(None)

                    async for message in client.messages:
                        if message.topic.matches(self.topic_commands):
                            await self._handle_message(message.payload)

            except asyncio.CancelledError:
                raise
            except (aiomqtt.MqttError, OSError) as e:
                self._client = None
                if not self._ready.done():
                    self._ready.set_exception(TransportError(f"MQTT connect failed: {e}"))
                    return
                logger.warning("MQTT connection lost (%s), reconnecting in %ds", e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, MAX_BACKOFF)

        self._client = None

    async def _handle_message(self, payload):
        try:
            if isinstance(payload, (bytes, bytearray)):
                payload = payload.decode()
            data = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError, TypeError):
            logger.warning("MQTT invalid JSON: %r", payload)
            return
        logger.debug("MQTT command received: %s", data)
        if self._command_handler is None:
            return
        try:
            await self._command_handler(data)
        except Exception as e:
            logger.error("MQTT command handler error: %s", e)

    # --- Publishing -----------------------------------------------------------

    async def publish(self, topic: str, payload, *, retain: bool = False):
        """Publish at-least-once.  Raises TransportError if not connected."""
        client = self._client
        if client is None:
            raise TransportError(f"MQTT not connected, dropping message for {topic}")
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload)
        try:
            await client.publish(topic, payload, qos=1, retain=retain)
        except aiomqtt.MqttError as e:
            raise TransportError(f"MQTT publish to {topic} failed: {e}") from e

    async def publish_status(self, snapshot):
        await self.publish(self.topic_status, snapshot.to_payload(), retain=True)
        logger.debug("Published song info to %s", self.topic_status)

    async def publish_image(self, image: bytes):
        await self.publish(self.topic_image, image, retain=True)
        logger.info("Published image to %s (%d bytes)", self.topic_image, len(image))

    async def publish_playlists(self, playlists):
        await self.publish(self.topic_playlists, [p.to_payload() for p in playlists])
        logger.info("Published %d playlists to %s", len(playlists), self.topic_playlists)

    async def publish_albums(self, albums):
        await self.publish(self.topic_albums, [a.to_payload() for a in albums])
        logger.info("Published %d albums to %s", len(albums), self.topic_albums)
