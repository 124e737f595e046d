from __future__ import annotations

import json

import pytest

from spotidial.lib.config import MqttSettings
from spotidial.remote import build_command, build_parser, describe, reply_topic

MQTT = MqttSettings()


@pytest.mark.parametrize("argv, expected", [
    (["play"], {"command": "play"}),
    (["volume-down"], {"command": "volume_down"}),
    (["set-volume", "40"], {"command": "set_volume", "parameter": "40"}),
    (["change-playlist", "37i9dQZF1"], {"command": "change_playlist", "parameter": "37i9dQZF1"}),
    (["change-album", "abc"], {"command": "change_album", "parameter": "abc"}),
    (["get-albums"], {"command": "get_albums"}),
])
def test_build_command(argv, expected) -> None:
    args = build_parser().parse_args(["--host", "broker.lan"] + argv)
    assert args.host == "broker.lan"
    assert build_command(args) == expected


def test_set_volume_requires_integer() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["set-volume", "loud"])


def test_reply_topics() -> None:
    assert reply_topic("get-playlists", MQTT) == "spotidial/playlists"
    assert reply_topic("get-albums", MQTT) == "spotidial/albums"
    assert reply_topic("play", MQTT) is None


def test_describe_messages() -> None:
    status = json.dumps({"artistName": "X", "trackName": "Song", "isPlaying": True,
                         "volumePercent": 40}).encode()
    listing = json.dumps([{"id": "pl0", "name": "Mix"}]).encode()

    assert describe(MQTT.status_topic, status, MQTT) == "[status] X - Song (playing, volume 40%)"
    assert describe(MQTT.image_topic, b"\xff\xd8" * 10, MQTT) == "[image] 20 bytes"
    assert describe(MQTT.playlist_topic, listing, MQTT).splitlines() == [
        "[spotidial/playlists] 1 entries", "  pl0  Mix"]
