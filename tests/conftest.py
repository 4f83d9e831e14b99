from typing import Callable, List, Optional

import pytest

from livemetrics.config import LiveMetricsConfig, get_settings
from livemetrics.events import SOURCE_POLL, SOURCE_PUSH, EventKind, TransportEvent


@pytest.fixture(autouse=True)
def _configure_test_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    env = {
        "LIVEMETRICS_API_BASE_URL": "http://gateway.test",
        "LIVEMETRICS_LOG_FILE": str(tmp_path / "livemetrics.log"),
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class FakeTimer:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Simulated clock: timers only fire when the test calls ``advance``."""

    def __init__(self) -> None:
        self.now = 0.0
        self.timers: List[FakeTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> List[FakeTimer]:
        return [timer for timer in self.timers if not timer.cancelled and not timer.fired]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [timer for timer in self.pending if timer.due <= target]
            if not due:
                break
            timer = min(due, key=lambda item: item.due)
            self.now = timer.due
            timer.fired = True
            timer.callback()
        self.now = target


class FakeConnector:
    def __init__(self, emit, *, generation: int) -> None:
        self.emit = emit
        self.generation = generation
        self.opened: List[str] = []
        self.close_calls = 0
        self.waited = False

    @property
    def is_open(self) -> bool:
        return bool(self.opened) and self.close_calls == 0

    def open(self, url: str) -> None:
        self.opened.append(url)

    def close(self) -> None:
        self.close_calls += 1

    async def wait_closed(self) -> None:
        self.waited = True

    def send(self, kind: EventKind, **fields) -> None:
        self.emit(TransportEvent(kind=kind, source=SOURCE_PUSH, generation=self.generation, **fields))


class FakePoller:
    def __init__(self, url: str, emit, *, generation: int) -> None:
        self.url = url
        self.emit = emit
        self.generation = generation
        self.started: List[int] = []
        self.stop_calls = 0
        self.waited = False

    @property
    def is_active(self) -> bool:
        return bool(self.started) and self.stop_calls == 0

    def start(self, interval_ms: int) -> None:
        self.started.append(interval_ms)

    def stop(self) -> None:
        self.stop_calls += 1

    async def wait_closed(self) -> None:
        self.waited = True

    def send(self, kind: EventKind, **fields) -> None:
        self.emit(TransportEvent(kind=kind, source=SOURCE_POLL, generation=self.generation, **fields))


class FakeTransports:
    def __init__(self) -> None:
        self.connectors: List[FakeConnector] = []
        self.pollers: List[FakePoller] = []

    def connector(self, emit, *, generation: int) -> FakeConnector:
        connector = FakeConnector(emit, generation=generation)
        self.connectors.append(connector)
        return connector

    def poller(self, url: str, emit, *, generation: int) -> FakePoller:
        poller = FakePoller(url, emit, generation=generation)
        self.pollers.append(poller)
        return poller

    @property
    def active(self) -> list:
        return [c for c in self.connectors if c.is_open] + [p for p in self.pollers if p.is_active]

    @property
    def last_connector(self) -> Optional[FakeConnector]:
        return self.connectors[-1] if self.connectors else None


@pytest.fixture
def make_config() -> Callable[..., LiveMetricsConfig]:
    def _make(**overrides) -> LiveMetricsConfig:
        values = {
            "stream_url": "http://gateway.test/api/stream/metrics",
            "poll_url": "http://gateway.test/api/metrics/live",
        }
        values.update(overrides)
        return LiveMetricsConfig(**values)

    return _make


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def transports() -> FakeTransports:
    return FakeTransports()
