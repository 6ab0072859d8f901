"""Exceptions raised across the gateway."""


class GatewayError(Exception):
    """Base class for gateway errors."""


class ConnectTimeout(GatewayError):
    """The car did not accept the TCP connection in time."""


class SocketError(GatewayError):
    """Transport-level failure on the car socket."""


class SendFailure(GatewayError):
    """A write to an assumed-live car connection failed."""


class MalformedClientMessage(GatewayError, ValueError):
    """An inbound client frame could not be parsed into an intent."""


class UnknownAction(GatewayError, KeyError):
    """A command intent named an action with no mapped payload."""

    def __str__(self) -> str:
        return f"Unknown action: {self.args[0]!r}" if self.args else "Unknown action"
