from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Set

import httpx

from .errors import LiveMetricsError, ProtocolError, ServerSignaledError, TransportError
from .events import SOURCE_PUSH, EventKind, EventSink, TransportEvent
from .frames import DEFAULT_EVENT_TYPE, ErrorFrame, HandshakeFrame, ServerSentEvent, SSEDecoder, parse_frame
from .logging_utils import get_logger
from .normalize import normalize

ClientFactory = Callable[[], httpx.AsyncClient]

STREAM_HEADERS = {
    "Accept": "text/event-stream",
    "Cache-Control": "no-cache",
    "User-Agent": "LiveMetrics-Dashboard/0.1",
}


class PushConnector:
    """Owns a single server-sent-events connection to the metrics stream.

    Frames are decoded on a reader task and reported through ``emit`` as
    ``TransportEvent``s. A transport failure closes the connector and is
    reported exactly once; ``close()`` is synchronous and nothing is emitted
    after it returns.
    """

    def __init__(self, emit: EventSink, *, generation: int, client_factory: ClientFactory) -> None:
        self._emit = emit
        self.generation = generation
        self._client_factory = client_factory
        self._task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._token = 0
        self._closed = True
        self._logger = get_logger("push")

    @property
    def is_open(self) -> bool:
        return not self._closed

    def open(self, url: str) -> None:
        self.close()
        self._closed = False
        self._token += 1
        task = asyncio.get_running_loop().create_task(self._run(url, self._token))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._task = task

    def close(self) -> None:
        if self._closed and self._task is None:
            return
        self._closed = True
        self._token += 1
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        self._logger.debug("Metrics stream closed generation=%s", self.generation)

    async def wait_closed(self) -> None:
        """Wait for reader tasks that were cancelled or failed to finish their cleanup."""
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, url: str, token: int) -> None:
        self._logger.info("Opening metrics stream url=%s generation=%s", url, self.generation)
        try:
            async with self._client_factory() as client:
                async with client.stream("GET", url, headers=STREAM_HEADERS) as response:
                    if response.status_code != 200:
                        self._fail(token, TransportError(f"Stream rejected with HTTP {response.status_code}"))
                        return
                    self._deliver(token, EventKind.OPENED)
                    decoder = SSEDecoder()
                    async for line in response.aiter_lines():
                        event = decoder.decode(line)
                        if event is not None:
                            self._handle_event(token, event)
        except (httpx.HTTPError, httpx.StreamError) as exc:
            self._fail(token, TransportError(f"Stream disconnected: {str(exc) or type(exc).__name__}"))
            return
        except Exception as exc:
            self._logger.exception("Metrics stream reader crashed generation=%s", self.generation)
            self._fail(token, TransportError(f"Stream reader failed: {type(exc).__name__}"))
            return
        self._fail(token, TransportError("Stream closed by server"))

    def _handle_event(self, token: int, event: ServerSentEvent) -> None:
        if event.event != DEFAULT_EVENT_TYPE:
            self._logger.debug("Ignoring stream event type=%s generation=%s", event.event, self.generation)
            return

        try:
            frame = parse_frame(event.data)
        except ProtocolError as exc:
            self._logger.warning("Malformed stream frame generation=%s error=%s", self.generation, exc)
            self._deliver(token, EventKind.ERROR, error=exc)
            return

        if isinstance(frame, HandshakeFrame):
            self._logger.info("Stream connection confirmed client_id=%s", frame.client_id)
            self._deliver(token, EventKind.HANDSHAKE, client_id=frame.client_id)
        elif isinstance(frame, ErrorFrame):
            self._logger.warning("Stream error signaled by server message=%s", frame.message)
            self._deliver(token, EventKind.ERROR, error=ServerSignaledError(frame.message))
        else:
            self._deliver(token, EventKind.TELEMETRY, snapshot=normalize(frame.payload))

    def _deliver(self, token: int, kind: EventKind, **fields: Any) -> None:
        if self._closed or token != self._token:
            return
        self._emit(TransportEvent(kind=kind, source=SOURCE_PUSH, generation=self.generation, **fields))

    def _fail(self, token: int, error: LiveMetricsError) -> None:
        if self._closed or token != self._token:
            return
        self._closed = True
        self._token += 1
        self._task = None
        self._logger.warning("Metrics stream failed generation=%s error=%s", self.generation, error)
        self._emit(TransportEvent(kind=EventKind.FAILED, source=SOURCE_PUSH, generation=self.generation, error=error))
