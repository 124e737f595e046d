# SpotiDial Bridge
# SPDX-License-Identifier: GPL-3.0-or-later

"""
spotidial-remote: pretend to be the dial.

Publishes one command to the bridge over MQTT, or watches what the bridge
publishes.  Topic names come from the same config/env as the bridge.

Usage:
    spotidial-remote play
    spotidial-remote set-volume 40
    spotidial-remote change-playlist 37i9dQZF1DXcBWIGoYBM5M
    spotidial-remote get-playlists
    spotidial-remote monitor
"""

import argparse
import asyncio
import json
import sys

import aiomqtt

from .lib.config import load_settings

# CLI name -> (bridge command, argument name or None)
COMMANDS = {
    "play": ("play", None),
    "pause": ("pause", None),
    "next": ("next", None),
    "previous": ("previous", None),
    "volume-up": ("volume_up", None),
    "volume-down": ("volume_down", None),
    "set-volume": ("set_volume", "level"),
    "change-playlist": ("change_playlist", "playlist_id"),
    "change-album": ("change_album", "album_id"),
    "get-playlists": ("get_playlists", None),
    "get-albums": ("get_albums", None),
}

HELP = {
    "play": "Resume playback",
    "pause": "Pause playback",
    "next": "Skip to next track",
    "previous": "Skip to previous track",
    "volume-up": "Increase volume by 5%%",
    "volume-down": "Decrease volume by 5%%",
    "set-volume": "Set volume to a specific level",
    "change-playlist": "Change to a playlist",
    "change-album": "Change to an album",
    "get-playlists": "Request the user's playlists",
    "get-albums": "Request the user's saved albums",
}

REPLY_TIMEOUT = 15.0


def build_parser():
    mqtt = load_settings().mqtt
    parser = argparse.ArgumentParser(
        prog="spotidial-remote",
        description="SpotiDial MQTT client: simulate M5Dial commands")
    parser.add_argument("--host", default=mqtt.broker_host, help="MQTT broker host")
    parser.add_argument("--port", type=int, default=mqtt.broker_port, help="MQTT broker port")
    parser.add_argument("--username", "-u", default=mqtt.username, help="MQTT username (optional)")
    parser.add_argument("--password", default=mqtt.password, help="MQTT password (optional)")
    sub = parser.add_subparsers(dest="action", required=True)

    for name, (_, arg) in COMMANDS.items():
        p = sub.add_parser(name, help=HELP[name])
        if arg == "level":
            p.add_argument("level", type=int, help="Volume level (0-100)")
        elif arg:
            p.add_argument(arg, help="Spotify %s ID" % arg.split("_")[0])

    sub.add_parser("monitor", help="Print status, image and listing updates from the bridge")
    return parser


def build_command(args) -> dict:
    """The JSON payload for a parsed command-line action."""
    command, arg = COMMANDS[args.action]
    payload = {"command": command}
    if arg:
        payload["parameter"] = str(getattr(args, arg))
    return payload


def reply_topic(action, mqtt):
    if action == "get-playlists":
        return mqtt.playlist_topic
    if action == "get-albums":
        return mqtt.album_topic
    return None


def describe(topic, payload, mqtt) -> str:
    """One printable line for a message the bridge published."""
    if topic == mqtt.image_topic:
        return f"[image] {len(payload)} bytes"
    try:
        data = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return f"[{topic}] {payload!r}"
    if topic == mqtt.status_topic and isinstance(data, dict):
        state = "playing" if data.get("isPlaying") else "paused"
        return (f"[status] {data.get('artistName', '?')} - {data.get('trackName', '?')} "
                f"({state}, volume {data.get('volumePercent', 0)}%)")
    if isinstance(data, list):
        lines = [f"[{topic}] {len(data)} entries"]
        lines += [f"  {entry.get('id', '')}  {entry.get('name', '')}" for entry in data]
        return "\n".join(lines)
    return f"[{topic}] {data}"


def _client(args, identifier):
    return aiomqtt.Client(
        hostname=args.host,
        port=args.port,
        username=args.username or None,
        password=args.password or None,
        identifier=identifier,
    )


async def send(args, mqtt) -> int:
    payload = build_command(args)
    replies = reply_topic(args.action, mqtt)
    async with _client(args, "spotidial-remote") as client:
        if replies:
            await client.subscribe(replies, qos=1)
        await client.publish(mqtt.command_topic, json.dumps(payload), qos=1)
        print(f"Sent {payload} to {mqtt.command_topic}")
        if not replies:
            return 0
        try:
            async with asyncio.timeout(REPLY_TIMEOUT):
                async for message in client.messages:
                    print(describe(replies, message.payload, mqtt))
                    return 0
        except TimeoutError:
            print(f"No reply on {replies} within {REPLY_TIMEOUT:.0f}s", file=sys.stderr)
            return 1
    return 0


async def monitor(args, mqtt) -> int:
    topics = (mqtt.status_topic, mqtt.image_topic, mqtt.playlist_topic,
              mqtt.album_topic, mqtt.availability_topic)
    async with _client(args, "spotidial-monitor") as client:
        for topic in topics:
            await client.subscribe(topic, qos=1)
        print(f"Monitoring {', '.join(topics)} (Ctrl+C to stop)")
        async for message in client.messages:
            topic = str(message.topic)
            if topic == mqtt.availability_topic:
                print(f"[bridge] {message.payload.decode(errors='replace')}")
            else:
                print(describe(topic, message.payload, mqtt))
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    mqtt = load_settings().mqtt
    try:
        if args.action == "monitor":
            return asyncio.run(monitor(args, mqtt))
        return asyncio.run(send(args, mqtt))
    except aiomqtt.MqttError as e:
        print(f"MQTT error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
