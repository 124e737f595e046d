# SpotiDial Bridge
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Error taxonomy for the bridge.

Only AuthError and TransportError raised during startup are fatal.  Everything
raised during steady-state operation is contained to the command or poll tick
that produced it.
"""


class SpotiDialError(Exception):
    """Base class for all bridge errors."""


class AuthError(SpotiDialError):
    """Token exchange, refresh or interactive authorization failed."""


class RemoteError(SpotiDialError):
    """The Spotify Web API answered with something we did not expect."""

    def __init__(self, message, status=None, reason=None):
        super().__init__(message)
        self.status = status
        self.reason = reason


class RecoverableDeviceError(RemoteError):
    """No active playback device.  Expected, treated as a no-op."""


class TransportError(SpotiDialError):
    """MQTT connect, subscribe or publish failed."""


class StorageError(SpotiDialError):
    """The refresh token could not be written to disk."""


class MalformedCommandError(SpotiDialError):
    """An inbound command or its parameter could not be parsed."""
