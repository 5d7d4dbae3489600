"""Error types shared by the load harness modules."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised when a run is configured in a way that cannot be executed.

    Always raised before the first request is issued.
    """


class TransportError(Exception):
    """A request that produced no usable HTTP response."""

    TIMEOUT = "timeout"
    CONNECTION = "connection"
    PROTOCOL = "protocol"

    def __init__(self, kind: str, message: str = "") -> None:
        super().__init__(f"{kind}: {message}" if message else kind)
        self.kind = kind
        self.message = message
