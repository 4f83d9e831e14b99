from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .errors import LiveMetricsError
from .snapshot import MetricsSnapshot

SOURCE_PUSH = "push"
SOURCE_POLL = "poll"


class EventKind(str, Enum):
    OPENED = "opened"
    HANDSHAKE = "handshake"
    TELEMETRY = "telemetry"
    ERROR = "error"
    FAILED = "failed"


@dataclass(frozen=True)
class TransportEvent:
    """One message from a transport to the state machine.

    ``generation`` identifies the transport instance that produced the event;
    the state machine drops events whose generation is no longer current.
    """

    kind: EventKind
    source: str
    generation: int
    snapshot: Optional[MetricsSnapshot] = None
    error: Optional[LiveMetricsError] = None
    client_id: Optional[str] = None


EventSink = Callable[[TransportEvent], None]
