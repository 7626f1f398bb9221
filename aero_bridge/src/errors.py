"""
Exception taxonomy for the bridge daemon.

Only ConfigurationError is fatal: it is raised during startup and stops the
process before any loop runs. Every other error is transient or local and is
handled where it occurs (reconnect, backoff, or dropping a single line or
measurement).

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""


class BridgeError(Exception):
    """Base class for every exception raised by this project."""


class ConfigurationError(BridgeError):
    """Startup cannot proceed: bad settings, unopenable device, rejected credentials."""


class DeviceError(BridgeError):
    """The serial link failed (disconnect, read or write error)."""


class SinkError(BridgeError):
    """A write to the remote store did not succeed.

    Args:
        message: Human-readable failure description.
        status_code: HTTP status of the response, or ``None`` for transport
            errors and timeouts.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DecodeError(BridgeError):
    """A line or a single measurement from the device could not be decoded."""
