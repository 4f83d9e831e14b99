from typing import Dict


class LiveMetricsError(Exception):
    """Base class for errors surfaced through the live metrics handle."""

    kind = "unknown"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_public_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class TransportError(LiveMetricsError):
    """Network or connection failure on the push stream or a poll request."""

    kind = "transport"


class ProtocolError(LiveMetricsError):
    """A frame or response body that could not be parsed."""

    kind = "protocol"


class ServerSignaledError(LiveMetricsError):
    """An explicit ``{"type": "error"}`` frame sent by the backend."""

    kind = "server"
