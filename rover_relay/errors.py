"""
Error types for the relay.

Protocol and authorization errors are answered with an ``error`` message
on the offending connection. Upstream errors are mapped to HTTP status
codes by the MJPEG proxy. Sink errors are logged and the command dropped.
"""


class RelayError(Exception):
    """Base class for all relay errors."""


class ProtocolError(RelayError):
    """Malformed message or unknown message type."""


class AuthorizationError(RelayError):
    """Message requires a role the connection does not hold."""


class UpstreamConnectError(RelayError):
    """Camera upstream could not be reached before any bytes were sent."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class UpstreamStreamError(RelayError):
    """Camera upstream failed after the downstream response started."""


class SinkUnavailable(RelayError):
    """MQTT broker is not connected; the command is dropped."""
