"""
Connection state machine for the live metrics client.

``LiveMetrics`` owns at most one transport at a time: a ``PushConnector``
while the stream is preferred, or a ``PollingFallback`` once the stream has
been given up. Transports never touch consumer state directly; they post
``TransportEvent``s onto an asyncio queue that a single consumer task applies
in order. Every transport is created with a fresh generation number and
events carrying an older generation are dropped, so a transport that has been
replaced or torn down can never reach the handle.

States::

    idle -> connecting -> open
    open|connecting -> error -> connecting          (retry-push)
    connecting|open|error -> polling_fallback       (push-then-poll, or retries exhausted)
    polling_fallback -> connecting                  (reconnect() only)
"""

from __future__ import annotations

import asyncio
import contextlib
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from .config import LiveMetricsConfig
from .errors import LiveMetricsError
from .events import SOURCE_PUSH, EventKind, TransportEvent
from .logging_utils import get_logger
from .poller import PollingFallback
from .push import PushConnector
from .snapshot import MetricsSnapshot
from .timers import LoopScheduler, Scheduler, TimerHandle


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    ERROR = "error"
    POLLING_FALLBACK = "polling_fallback"


Listener = Callable[["MetricsHandle"], None]


class MetricsHandle:
    """Read-only, observable view of a live metrics client.

    ``data`` keeps the last successful snapshot while ``error`` is set, so
    consumers can keep rendering stale data behind a reconnecting indicator.
    Only the owning ``LiveMetrics`` writes to it.
    """

    def __init__(self, reconnect: Callable[[], None]) -> None:
        self._reconnect = reconnect
        self._data: Optional[MetricsSnapshot] = None
        self._connected = False
        self._error: Optional[LiveMetricsError] = None
        self._state = ConnectionState.IDLE
        self._listeners: List[Listener] = []
        self._logger = get_logger("handle")

    @property
    def data(self) -> Optional[MetricsSnapshot]:
        return self._data

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def error(self) -> Optional[LiveMetricsError]:
        return self._error

    @property
    def state(self) -> ConnectionState:
        return self._state

    def reconnect(self) -> None:
        self._reconnect()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener(handle)`` after every change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def to_public_dict(self) -> Dict[str, object]:
        return {
            "data": self._data.to_public_dict() if self._data is not None else None,
            "connected": self._connected,
            "error": self._error.to_public_dict() if self._error is not None else None,
            "state": self._state.value,
        }

    def _update(self, **changes: Any) -> None:
        changed = False
        for name, value in changes.items():
            attr = f"_{name}"
            if getattr(self, attr) is not value:
                setattr(self, attr, value)
                changed = True
        if changed:
            self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                self._logger.exception("Live metrics subscriber %r raised", listener)

    def _detach(self) -> None:
        self._listeners.clear()


class LiveMetrics:
    def __init__(
        self,
        config: LiveMetricsConfig,
        *,
        scheduler: Optional[Scheduler] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        connector_factory: Optional[Callable[..., PushConnector]] = None,
        poller_factory: Optional[Callable[..., PollingFallback]] = None,
    ) -> None:
        self.config = config
        self._scheduler = scheduler or LoopScheduler()
        self._client_factory = client_factory
        self._connector_factory = connector_factory or self._make_connector
        self._poller_factory = poller_factory or self._make_poller
        self._inbox: "asyncio.Queue[TransportEvent]" = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._push: Optional[PushConnector] = None
        self._poller: Optional[PollingFallback] = None
        self._retry_timer: Optional[TimerHandle] = None
        self._generation = 0
        self._retries = 0
        self._closed = False
        self.handle = MetricsHandle(self.reconnect)
        self._logger = get_logger("live")

    @property
    def state(self) -> ConnectionState:
        return self.handle.state

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "LiveMetrics":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def start(self) -> None:
        if self._closed:
            raise RuntimeError("LiveMetrics client has been closed")
        if self._consumer is None:
            self._consumer = asyncio.get_running_loop().create_task(self._consume())
        if self.handle.state is ConnectionState.IDLE:
            self._logger.info(
                "Starting live metrics transport=%s stream_url=%s poll_url=%s",
                self.config.transport,
                self.config.stream_url,
                self.config.poll_url,
            )
            self._connect()

    def reconnect(self) -> None:
        if self._closed:
            self._logger.debug("Reconnect ignored: client is closed")
            return
        if self._consumer is None:
            self.start()
            return
        self._logger.info("Reconnect requested state=%s", self.handle.state.value)
        self._retries = 0
        self._connect()

    def close(self) -> None:
        """Tear down the active transport and all timers. Nothing is delivered afterwards."""
        if self._closed:
            return
        self._closed = True
        self._cancel_retry_timer()
        self._teardown_transport()
        self._generation += 1
        self.handle._detach()
        self.handle._update(connected=False, state=ConnectionState.IDLE)

        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
        self._discard_pending()
        self._logger.info("Live metrics closed")

    async def aclose(self) -> None:
        """Close and wait for the consumer and the torn-down transport to finish their cleanup."""
        consumer = self._consumer
        transports = [self._push, self._poller]
        self.close()
        if consumer is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
        for transport in transports:
            if transport is not None:
                await transport.wait_closed()

    async def drain(self) -> None:
        """Wait until every event already posted by a transport has been applied."""
        await self._inbox.join()

    def _make_connector(self, emit: Callable[[TransportEvent], None], *, generation: int) -> PushConnector:
        return PushConnector(emit, generation=generation, client_factory=self._client_factory or self._stream_client)

    def _make_poller(
        self, url: str, emit: Callable[[TransportEvent], None], *, generation: int
    ) -> PollingFallback:
        return PollingFallback(
            url,
            emit,
            generation=generation,
            scheduler=self._scheduler,
            client_factory=self._client_factory or self._poll_client,
        )

    def _stream_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.config.request_timeout_seconds, read=self.config.stream_read_timeout_seconds)
        return httpx.AsyncClient(timeout=timeout)

    def _poll_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.request_timeout_seconds)

    def _post(self, event: TransportEvent) -> None:
        if self._closed:
            return
        self._inbox.put_nowait(event)

    async def _consume(self) -> None:
        while True:
            event = await self._inbox.get()
            try:
                self._apply(event)
            except Exception:
                self._logger.exception("Failed to apply %s event from %s", event.kind.value, event.source)
            finally:
                self._inbox.task_done()

    def _discard_pending(self) -> None:
        while True:
            try:
                self._inbox.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._inbox.task_done()

    def _apply(self, event: TransportEvent) -> None:
        if self._closed or event.generation != self._generation:
            self._logger.debug(
                "Dropping stale %s event source=%s generation=%s current=%s",
                event.kind.value,
                event.source,
                event.generation,
                self._generation,
            )
            return

        if event.kind in (EventKind.OPENED, EventKind.HANDSHAKE):
            self.handle._update(**self._opened_changes())
        elif event.kind is EventKind.TELEMETRY:
            changes: Dict[str, Any] = {"data": event.snapshot}
            if event.source == SOURCE_PUSH:
                changes.update(self._opened_changes())
            self.handle._update(**changes)
        elif event.kind is EventKind.ERROR:
            self.handle._update(error=event.error)
        elif event.kind is EventKind.FAILED:
            self._on_push_failure(event.error)

    def _opened_changes(self) -> Dict[str, Any]:
        if self.handle.state is ConnectionState.OPEN:
            return {}
        self._retries = 0
        self._logger.info("Live metrics state %s -> open", self.handle.state.value)
        return {"state": ConnectionState.OPEN, "connected": True, "error": None}

    def _on_push_failure(self, error: Optional[LiveMetricsError]) -> None:
        push, self._push = self._push, None
        if push is not None:
            push.close()

        max_retries = self.config.max_push_retries
        if self.config.transport == "retry-push" and (max_retries is None or self._retries < max_retries):
            self._retries += 1
            self._logger.warning(
                "Metrics stream failed; retrying in %sms attempt=%s error=%s",
                self.config.retry_delay_ms,
                self._retries,
                error,
            )
            self._set_state(ConnectionState.ERROR, connected=False, error=error)
            self._schedule_retry()
            return

        self._logger.warning(
            "Metrics stream failed; falling back to polling every %sms error=%s",
            self.config.poll_interval_ms,
            error,
        )
        self.handle._update(connected=False, error=error)
        self._fallback_to_polling()

    def _connect(self) -> None:
        self._cancel_retry_timer()
        self._teardown_transport()
        self._generation += 1
        self._set_state(ConnectionState.CONNECTING)
        connector = self._connector_factory(self._post, generation=self._generation)
        self._push = connector
        connector.open(self.config.stream_url)

    def _fallback_to_polling(self) -> None:
        self._cancel_retry_timer()
        self._teardown_transport()
        self._generation += 1
        self._set_state(ConnectionState.POLLING_FALLBACK)
        poller = self._poller_factory(self.config.poll_url, self._post, generation=self._generation)
        self._poller = poller
        poller.start(self.config.poll_interval_ms)

    def _teardown_transport(self) -> None:
        push, self._push = self._push, None
        if push is not None:
            push.close()
        poller, self._poller = self._poller, None
        if poller is not None:
            poller.stop()

    def _schedule_retry(self) -> None:
        self._cancel_retry_timer()
        self._retry_timer = self._scheduler.call_later(self.config.retry_delay_ms / 1000, self._on_retry_due)

    def _on_retry_due(self) -> None:
        self._retry_timer = None
        if self._closed:
            return
        self._logger.info("Retrying metrics stream attempt=%s", self._retries)
        self._connect()

    def _cancel_retry_timer(self) -> None:
        timer, self._retry_timer = self._retry_timer, None
        if timer is not None:
            timer.cancel()

    def _set_state(self, state: ConnectionState, **changes: Any) -> None:
        if self.handle.state is not state:
            self._logger.info("Live metrics state %s -> %s", self.handle.state.value, state.value)
        self.handle._update(state=state, **changes)
