# SpotiDial Bridge
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Atomic storage for the Spotify refresh token.

Holds a single credential (one account per bridge) in a JSON file.  Writes
are atomic (temp file + rename) so a crash mid-write never corrupts the file,
and a save always replaces the previous record.

Storage locations (first existing, else first writable, wins):
  1. $SPOTIDIAL_TOKEN_FILE / spotify.token_file   (explicit)
  2. /etc/spotidial/spotify_token.json            (deployed install)
  3. <cwd>/spotify_token.json                     (dev fallback)
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone

from ..errors import StorageError

log = logging.getLogger(__name__)

TOKEN_FILENAME = "spotify_token.json"


def _default_paths():
    return [
        os.path.join("/etc/spotidial", TOKEN_FILENAME),
        os.path.join(os.getcwd(), TOKEN_FILENAME),
    ]


def find_store_path(paths=None):
    """Find the best token store path (first existing, or first writable)."""
    paths = paths or _default_paths()
    # Prefer an existing file
    for path in paths:
        if os.path.exists(path):
            return path
    # Fall back to first writable directory
    for path in paths:
        d = os.path.dirname(path)
        if os.path.isdir(d) and os.access(d, os.W_OK):
            return path
    # Last resort: dev path
    return paths[-1]


@dataclass(frozen=True)
class Credential:
    refresh_token: str
    saved_at: datetime | None = None


class TokenStore:
    """Load and save the refresh token at a fixed path."""

    def __init__(self, path=None):
        self.path = path or find_store_path()

    def load(self) -> Credential | None:
        """Return the stored credential, or None if absent or unreadable."""
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            log.info("No stored refresh token at %s", self.path)
            return None
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Could not read token file %s: %s", self.path, e)
            return None

        token = data.get("refresh_token") if isinstance(data, dict) else None
        if not token:
            log.info("Token file %s has no refresh token", self.path)
            return None

        saved_at = None
        try:
            saved_at = datetime.fromisoformat(data.get("saved_at", ""))
        except (TypeError, ValueError):
            pass
        log.info("Loaded refresh token from %s", self.path)
        return Credential(refresh_token=token, saved_at=saved_at)

    def save(self, refresh_token: str) -> Credential:
        """Atomically replace the stored credential.  Raises StorageError."""
        credential = Credential(refresh_token=refresh_token,
                                saved_at=datetime.now(timezone.utc))
        data = {
            "refresh_token": credential.refresh_token,
            "saved_at": credential.saved_at.isoformat(),
        }

        d = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(d, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=d, suffix=".tmp")
        except OSError as e:
            raise StorageError(f"cannot write token file {self.path}: {e}") from e

        # Atomic write: temp file in same directory, then rename
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
        except OSError as e:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise StorageError(f"cannot write token file {self.path}: {e}") from e

        log.info("Refresh token saved to %s", self.path)
        return credential
