"""Exception types shared by discovery, the control channel and the host layer."""

from typing import List, Optional


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


class DiscoverySocketError(BridgeError):
    """Discovery socket failed (bind, multicast join, send or receive).

    ``devices`` holds the records collected before the failure.
    """

    def __init__(self, message: str, devices: Optional[List] = None):
        super().__init__(message)
        self.devices = list(devices or [])


class ControlError(BridgeError):
    """A single control-channel command did not produce a usable reply."""


class PreconditionError(ControlError):
    """Device location missing or unparsable; no connection was attempted."""


class ConnectError(ControlError):
    """TCP connection to the device could not be established."""


class DecodeError(ControlError):
    """Device reply was not a JSON object."""


class CommandTimeoutError(ControlError):
    """No reply arrived before the deadline."""
