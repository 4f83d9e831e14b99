from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .errors import ProtocolError

DEFAULT_EVENT_TYPE = "message"


@dataclass(frozen=True)
class ServerSentEvent:
    data: str
    event: str = DEFAULT_EVENT_TYPE
    id: Optional[str] = None


class SSEDecoder:
    """Incremental decoder for a ``text/event-stream`` body, fed one line at a time.

    Lines are expected without their terminator. A blank line ends the current
    event; comment lines (``: heartbeat``) and ``retry`` fields are ignored.
    """

    def __init__(self) -> None:
        self._data: List[str] = []
        self._event = ""
        self._last_id: Optional[str] = None

    def decode(self, line: str) -> Optional[ServerSentEvent]:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id" and "\0" not in value:
            self._last_id = value
        return None

    def _dispatch(self) -> Optional[ServerSentEvent]:
        if not self._data:
            self._event = ""
            return None
        event = ServerSentEvent(
            data="\n".join(self._data),
            event=self._event or DEFAULT_EVENT_TYPE,
            id=self._last_id,
        )
        self._data = []
        self._event = ""
        return event


@dataclass(frozen=True)
class HandshakeFrame:
    client_id: Optional[str]


@dataclass(frozen=True)
class ErrorFrame:
    message: str


@dataclass(frozen=True)
class TelemetryFrame:
    payload: Dict[str, Any] = field(default_factory=dict)


Frame = Union[HandshakeFrame, ErrorFrame, TelemetryFrame]


def classify_frame(message: Any) -> Frame:
    if not isinstance(message, dict):
        raise ProtocolError(f"Expected a JSON object frame, got {type(message).__name__}")

    frame_type = message.get("type")
    if frame_type == "connected":
        client_id = message.get("clientId")
        return HandshakeFrame(client_id=None if client_id is None else str(client_id))
    if frame_type == "error":
        return ErrorFrame(message=str(message.get("message") or "Stream error"))
    return TelemetryFrame(payload=message)


def parse_frame(data: str) -> Frame:
    try:
        message = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Failed to parse stream message: {exc.msg}") from exc
    except (ValueError, RecursionError) as exc:
        raise ProtocolError(f"Failed to parse stream message: {type(exc).__name__}") from exc
    return classify_frame(message)
