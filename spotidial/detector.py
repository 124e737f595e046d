# SpotiDial Bridge
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Now-playing change detection.

ChangeDetector remembers the last track id it saw and reports a change
exactly once per transition.  "Nothing playing" leaves that memory alone, so
resuming the same track does not fire again.  Poller samples the gateway on a
fixed interval and feeds the detector; poll errors back off and never end
the loop.
"""

import asyncio
import logging

log = logging.getLogger(__name__)

POLL_INTERVAL = 1.0   # seconds between now-playing polls
ERROR_BACKOFF = 5.0   # seconds to wait after a failed poll


class ChangeDetector:
    def __init__(self):
        self.track_id: str | None = None  # None = unknown (nothing seen yet)

    def observe(self, snapshot) -> bool:
        """Record *snapshot*; True if it is a different track than last seen."""
        if snapshot is None:
            return False
        if snapshot.track_id == self.track_id:
            return False
        self.track_id = snapshot.track_id
        return True


class Poller:
    """Periodic now-playing loop.  Runs until cancelled."""

    def __init__(self, gateway, detector, on_change, *,
                 interval=POLL_INTERVAL, error_backoff=ERROR_BACKOFF):
        self.gateway = gateway
        self.detector = detector
        self.on_change = on_change
        self.interval = interval
        self.error_backoff = error_backoff

    async def tick(self) -> bool:
        """One poll.  Returns True if a change event was emitted."""
        snapshot = await self.gateway.get_current_playback()
        if not self.detector.observe(snapshot):
            return False
        log.info("Song changed: %s - %s", snapshot.artist_name, snapshot.track_name)
        try:
            await self.on_change(snapshot)
        except Exception:
            log.exception("Error handling song change")
        return True

    async def run(self):
        log.info("Starting playback monitoring (every %.1fs)", self.interval)
        try:
            while True:
                try:
                    await self.tick()
                except Exception as e:
                    log.error("Error monitoring playback: %s", e)
                    await asyncio.sleep(self.error_backoff)
                    continue
                await asyncio.sleep(self.interval)
        finally:
            log.info("Playback monitoring stopped")
