# SpotiDial Bridge
# SPDX-License-Identifier: GPL-3.0-or-later

"""Systemd notify support for the bridge.

Sends READY=1 / STOPPING=1 and a WATCHDOG=1 heartbeat to the systemd notify
socket.  Silently no-ops when NOTIFY_SOCKET is unset (dev mode).
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 20.0


def sd_notify(msg: str) -> bool:
    """Send a notification message to the systemd notify socket."""
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return False
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
    except OSError as e:
        logger.debug("sd_notify(%s) failed: %s", msg, e)
        return False
    finally:
        sock.close()
    return True


def watchdog_interval() -> float:
    """Half of systemd's WatchdogSec, or DEFAULT_INTERVAL if unset."""
    try:
        usec = int(os.environ.get("WATCHDOG_USEC", ""))
    except ValueError:
        return DEFAULT_INTERVAL
    return max(1.0, usec / 2_000_000)


async def watchdog_loop(interval: float | None = None):
    """Send WATCHDOG=1 every *interval* seconds until cancelled."""
    interval = interval or watchdog_interval()
    if not os.environ.get("NOTIFY_SOCKET"):
        return
    logger.info("Watchdog started (interval=%.0fs)", interval)
    while True:
        sd_notify("WATCHDOG=1")
        await asyncio.sleep(interval)
