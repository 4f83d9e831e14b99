from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Set

import httpx

from .errors import LiveMetricsError, ProtocolError, TransportError
from .events import SOURCE_POLL, EventKind, EventSink, TransportEvent
from .logging_utils import get_logger
from .normalize import normalize
from .timers import Scheduler, TimerHandle

ClientFactory = Callable[[], httpx.AsyncClient]

POLL_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "LiveMetrics-Dashboard/0.1",
}


def unwrap_envelope(body: Any) -> Any:
    """Return ``body["data"]`` for ``{"data": ...}`` envelopes, otherwise ``body`` itself."""
    if isinstance(body, dict) and body.get("data") is not None:
        return body["data"]
    return body


class PollingFallback:
    """Timer-driven pull loop against the live metrics endpoint.

    Fetches once immediately on ``start`` and then once per interval. A failed
    tick is reported and the timer keeps running. ``stop`` cancels the timer and
    any in-flight fetch; a response that still arrives afterwards is dropped.
    """

    def __init__(
        self,
        url: str,
        emit: EventSink,
        *,
        generation: int,
        scheduler: Scheduler,
        client_factory: ClientFactory,
    ) -> None:
        self.url = url
        self.generation = generation
        self._emit = emit
        self._scheduler = scheduler
        self._client_factory = client_factory
        self._interval = 0.0
        self._active = False
        self._timer: Optional[TimerHandle] = None
        self._inflight: Set[asyncio.Task] = set()
        self._logger = get_logger("poller")

    @property
    def is_active(self) -> bool:
        return self._active

    def start(self, interval_ms: int) -> None:
        self.stop()
        self._active = True
        self._interval = interval_ms / 1000
        self._logger.info(
            "Polling metrics url=%s interval_ms=%s generation=%s", self.url, interval_ms, self.generation
        )
        self._poll_now()
        self._schedule()

    def stop(self) -> None:
        if not self._active and self._timer is None and not self._inflight:
            return
        self._active = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for task in list(self._inflight):
            task.cancel()
        self._logger.debug("Polling stopped generation=%s", self.generation)

    async def wait_closed(self) -> None:
        tasks = list(self._inflight)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _schedule(self) -> None:
        self._timer = self._scheduler.call_later(self._interval, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if not self._active:
            return
        self._poll_now()
        self._schedule()

    def _poll_now(self) -> None:
        task = asyncio.get_running_loop().create_task(self._poll_once())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _poll_once(self) -> None:
        error: LiveMetricsError
        try:
            async with self._client_factory() as client:
                response = await client.get(self.url, headers=POLL_HEADERS)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            error = TransportError(f"Polling failed with HTTP {exc.response.status_code}")
        except httpx.HTTPError as exc:
            error = TransportError(f"Polling failed: {str(exc) or type(exc).__name__}")
        except (ValueError, RecursionError) as exc:
            error = ProtocolError(f"Poll response is not valid JSON: {type(exc).__name__}")
        else:
            payload = unwrap_envelope(body)
            if isinstance(payload, dict):
                self._deliver(EventKind.TELEMETRY, snapshot=normalize(payload))
                return
            error = ProtocolError(f"Expected a JSON object poll response, got {type(payload).__name__}")

        self._logger.warning("Metrics poll failed url=%s error=%s", self.url, error)
        self._deliver(EventKind.ERROR, error=error)

    def _deliver(self, kind: EventKind, **fields: Any) -> None:
        if not self._active:
            self._logger.debug("Discarding poll result received after stop generation=%s", self.generation)
            return
        self._emit(TransportEvent(kind=kind, source=SOURCE_POLL, generation=self.generation, **fields))
