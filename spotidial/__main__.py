#!/usr/bin/env python3
# SpotiDial Bridge
# SPDX-License-Identifier: GPL-3.0-or-later

"""
SpotiDial bridge service (spotidial-bridge)

Polls the Spotify account for now-playing changes, pushes status and artwork
to the dial over MQTT, and relays the dial's commands back to Spotify.

Usage:
    spotidial-bridge                 run the bridge
    spotidial-bridge --authorize     authorize in the browser, save + print the refresh token
"""

import argparse
import asyncio
import logging
import os
import sys

from .bridge import Bridge
from .errors import AuthError, TransportError
from .lib.config import load_settings, reload_config
from .spotify.auth import AuthSession
from .spotify.tokens import TokenStore

log = logging.getLogger("spotidial")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="spotidial-bridge",
        description="SpotiDial: M5Dial <-> Spotify bridge")
    parser.add_argument("--config", help="Path to config.json (default: search paths)")
    parser.add_argument("--authorize", action="store_true",
                        help="Run the browser authorization only, then exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


async def _authorize_only(settings) -> int:
    store = TokenStore(settings.spotify.token_file or None)
    auth = AuthSession(settings.spotify, store)
    if not settings.spotify.client_id:
        log.critical("spotify.client_id is not configured")
        return 1
    try:
        await auth.authorize()
    except AuthError as e:
        log.critical("Authorization failed: %s", e)
        return 1
    finally:
        await auth.close()
    print()
    print("REFRESH TOKEN (saved to %s):" % store.path)
    print(auth.refresh_token)
    return 0


async def _run(settings) -> int:
    bridge = Bridge(settings)
    try:
        await bridge.run()
    except (AuthError, TransportError) as e:
        log.critical("Fatal startup error: %s", e)
        return 1
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='[%(levelname)s] %(message)s')

    if args.config:
        os.environ["SPOTIDIAL_CONFIG"] = args.config
        reload_config()
    settings = load_settings()

    log.info("SpotiDial bridge: M5Dial <-> Spotify")
    if args.authorize:
        return asyncio.run(_authorize_only(settings))
    return asyncio.run(_run(settings))


if __name__ == "__main__":
    sys.exit(main())
