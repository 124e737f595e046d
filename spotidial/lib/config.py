# SpotiDial Bridge
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Configuration loader for the SpotiDial bridge.

Loads a single JSON config file.  Search order:
  1. $SPOTIDIAL_CONFIG              (explicit path, also set by --config)
  2. /etc/spotidial/config.json     (deployed install)
  3. config.json                    (CWD, for local dev)

Secrets and per-deployment overrides (SPOTIFY_CLIENT_SECRET, MQTT_PASSWORD,
etc.) come from environment variables and win over the JSON file.

Usage:
    from spotidial.lib.config import cfg, load_settings

    broker   = cfg("mqtt", "broker_host", default="localhost")
    settings = load_settings()
    settings.mqtt.status_topic
"""

import json
import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/spotidial/config.json",
    "config.json",
]


def _search_paths() -> list[str]:
    explicit = os.getenv("SPOTIDIAL_CONFIG")
    if explicit:
        return [explicit] + _SEARCH_PATHS
    return list(_SEARCH_PATHS)


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    spotify = config.get("spotify") or {}
    if not spotify.get("client_id") and not os.getenv("SPOTIFY_CLIENT_ID"):
        logger.warning("Config %s: missing spotify.client_id, bridge will refuse to start", path)
    mqtt = config.get("mqtt") or {}
    port = mqtt.get("broker_port")
    if port is not None and not isinstance(port, int):
        logger.warning("Config %s: mqtt.broker_port should be a number, got %r", path, port)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.info("No config.json found: using environment and defaults")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("mqtt")                          → config["mqtt"]
    cfg("mqtt", "broker_host")           → config["mqtt"]["broker_host"]
    cfg("spotify", "poll_interval_ms", default=1000)
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()


def _env(name: str, section: str, key: str, default=None):
    """Environment variable first, then JSON config, then default."""
    value = os.getenv(name)
    if value not in (None, ""):
        return value
    return cfg(section, key, default=default)


def _env_int(name: str, section: str, key: str, default: int) -> int:
    value = _env(name, section, key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric %s=%r, using %d", name, value, default)
        return default


_TRUE = ("true", "yes", "on", "1")
_FALSE = ("false", "no", "off", "0")


def _cfg_bool(section: str, key: str, default: bool) -> bool:
    """JSON booleans as-is; common string spellings parsed; anything else warns."""
    value = cfg(section, key, default=default)
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    logger.warning("Ignoring non-boolean %s.%s=%r, using %s", section, key, value, default)
    return default


# -- Typed settings -----------------------------------------------------------

@dataclass(frozen=True)
class MqttSettings:
    broker_host: str = "localhost"
    broker_port: int = 1883
    client_id: str = "SpotiDialBackend"
    username: str = ""
    password: str = ""
    command_topic: str = "spotidial/commands"
    status_topic: str = "spotidial/status"
    image_topic: str = "spotidial/image"
    playlist_topic: str = "spotidial/playlists"
    album_topic: str = "spotidial/albums"
    availability_topic: str = "spotidial/availability"
    connect_timeout: float = 30.0


@dataclass(frozen=True)
class SpotifySettings:
    client_id: str = ""
    client_secret: str = ""
    refresh_token: str = ""
    poll_interval_ms: int = 1000
    error_backoff_ms: int = 5000
    oauth_port: int = 8888
    redirect_uri: str = ""
    auth_timeout: float = 300.0
    token_file: str = ""
    open_browser: bool = True

    @property
    def callback_uri(self) -> str:
        return self.redirect_uri or f"http://127.0.0.1:{self.oauth_port}/callback"


@dataclass(frozen=True)
class ArtworkSettings:
    width: int = 240
    height: int = 240
    quality: int = 80
    cache_size: int = 32


@dataclass(frozen=True)
class Settings:
    mqtt: MqttSettings = field(default_factory=MqttSettings)
    spotify: SpotifySettings = field(default_factory=SpotifySettings)
    artwork: ArtworkSettings = field(default_factory=ArtworkSettings)


def load_settings() -> Settings:
    """Build typed settings from the JSON config plus environment overrides."""
    d_mqtt = MqttSettings()
    mqtt = MqttSettings(
        broker_host=_env("MQTT_BROKER_HOST", "mqtt", "broker_host", d_mqtt.broker_host),
        broker_port=_env_int("MQTT_BROKER_PORT", "mqtt", "broker_port", d_mqtt.broker_port),
        client_id=_env("MQTT_CLIENT_ID", "mqtt", "client_id", d_mqtt.client_id),
        username=_env("MQTT_USERNAME", "mqtt", "username", d_mqtt.username),
        password=_env("MQTT_PASSWORD", "mqtt", "password", d_mqtt.password),
        command_topic=_env("MQTT_COMMAND_TOPIC", "mqtt", "command_topic", d_mqtt.command_topic),
        status_topic=_env("MQTT_STATUS_TOPIC", "mqtt", "status_topic", d_mqtt.status_topic),
        image_topic=_env("MQTT_IMAGE_TOPIC", "mqtt", "image_topic", d_mqtt.image_topic),
        playlist_topic=_env("MQTT_PLAYLIST_TOPIC", "mqtt", "playlist_topic", d_mqtt.playlist_topic),
        album_topic=_env("MQTT_ALBUM_TOPIC", "mqtt", "album_topic", d_mqtt.album_topic),
        availability_topic=cfg("mqtt", "availability_topic", default=d_mqtt.availability_topic),
        connect_timeout=float(cfg("mqtt", "connect_timeout", default=d_mqtt.connect_timeout)),
    )

    d_sp = SpotifySettings()
    spotify = SpotifySettings(
        client_id=_env("SPOTIFY_CLIENT_ID", "spotify", "client_id", d_sp.client_id),
        client_secret=_env("SPOTIFY_CLIENT_SECRET", "spotify", "client_secret", d_sp.client_secret),
        refresh_token=_env("SPOTIFY_REFRESH_TOKEN", "spotify", "refresh_token", d_sp.refresh_token),
        poll_interval_ms=_env_int("SPOTIFY_POLLING_INTERVAL_MS", "spotify", "poll_interval_ms",
                                  d_sp.poll_interval_ms),
        error_backoff_ms=int(cfg("spotify", "error_backoff_ms", default=d_sp.error_backoff_ms)),
        oauth_port=_env_int("SPOTIFY_OAUTH_PORT", "spotify", "oauth_port", d_sp.oauth_port),
        redirect_uri=_env("SPOTIFY_REDIRECT_URI", "spotify", "redirect_uri", d_sp.redirect_uri),
        auth_timeout=float(cfg("spotify", "auth_timeout", default=d_sp.auth_timeout)),
        token_file=_env("SPOTIDIAL_TOKEN_FILE", "spotify", "token_file", d_sp.token_file),
        open_browser=_cfg_bool("spotify", "open_browser", d_sp.open_browser),
    )

    d_art = ArtworkSettings()
    artwork = ArtworkSettings(
        width=int(cfg("artwork", "width", default=d_art.width)),
        height=int(cfg("artwork", "height", default=d_art.height)),
        quality=int(cfg("artwork", "quality", default=d_art.quality)),
        cache_size=int(cfg("artwork", "cache_size", default=d_art.cache_size)),
    )

    return Settings(mqtt=mqtt, spotify=spotify, artwork=artwork)
