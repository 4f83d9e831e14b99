import asyncio

import httpx

from livemetrics.events import EventKind
from livemetrics.push import PushConnector

STREAM_URL = "http://gateway.test/api/stream/metrics"


def _client_factory(handler):
    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


class _Recorder:
    def __init__(self) -> None:
        self.events = []
        self.failed = asyncio.Event()
        self.handshakes = 0
        self.handshake_seen = asyncio.Event()

    def __call__(self, event) -> None:
        self.events.append(event)
        if event.kind is EventKind.FAILED:
            self.failed.set()
        if event.kind is EventKind.HANDSHAKE:
            self.handshakes += 1
            self.handshake_seen.set()

    @property
    def kinds(self):
        return [event.kind for event in self.events]


def test_stream_frames_are_reported_in_order():
    async def body():
        yield b'data: {"type":"connected","clientId":"abc"}\n\n'
        yield b": heartbeat\n\n"
        yield b'data: {"summary":{"totalRequestsAllTime":500,"totalRequests":120}}\n\n'
        yield b"data: {not json}\n\n"
        yield b'data: {"type":"error","message":"upstream lag"}\n\n'

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["accept"] == "text/event-stream"
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())

    async def scenario():
        recorder = _Recorder()
        connector = PushConnector(recorder, generation=3, client_factory=_client_factory(handler))
        connector.open(STREAM_URL)
        await asyncio.wait_for(recorder.failed.wait(), timeout=2)
        return connector, recorder

    connector, recorder = asyncio.run(scenario())

    assert recorder.kinds == [
        EventKind.OPENED,
        EventKind.HANDSHAKE,
        EventKind.TELEMETRY,
        EventKind.ERROR,
        EventKind.ERROR,
        EventKind.FAILED,
    ]
    assert all(event.generation == 3 and event.source == "push" for event in recorder.events)
    assert recorder.events[1].client_id == "abc"
    assert recorder.events[2].snapshot.summary.total_requests == 500
    assert recorder.events[3].error.kind == "protocol"
    assert recorder.events[4].error.kind == "server"
    assert recorder.events[4].error.message == "upstream lag"
    assert recorder.events[5].error.kind == "transport"
    assert not connector.is_open


def test_connection_error_reports_single_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        recorder = _Recorder()
        connector = PushConnector(recorder, generation=1, client_factory=_client_factory(handler))
        connector.open(STREAM_URL)
        await asyncio.wait_for(recorder.failed.wait(), timeout=2)
        await asyncio.sleep(0.01)
        return connector, recorder

    connector, recorder = asyncio.run(scenario())

    assert recorder.kinds == [EventKind.FAILED]
    assert recorder.events[0].error.kind == "transport"
    assert "connection refused" in recorder.events[0].error.message
    assert not connector.is_open


def test_non_200_response_is_a_transport_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "unavailable"})

    async def scenario():
        recorder = _Recorder()
        connector = PushConnector(recorder, generation=1, client_factory=_client_factory(handler))
        connector.open(STREAM_URL)
        await asyncio.wait_for(recorder.failed.wait(), timeout=2)
        return recorder

    recorder = asyncio.run(scenario())

    assert recorder.kinds == [EventKind.FAILED]
    assert "HTTP 503" in recorder.events[0].error.message


def test_close_is_idempotent_and_silences_the_connector():
    async def body():
        yield b'data: {"type":"connected","clientId":"abc"}\n\n'

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    async def scenario():
        recorder = _Recorder()
        connector = PushConnector(recorder, generation=1, client_factory=_client_factory(handler))
        connector.open(STREAM_URL)
        connector.close()
        connector.close()
        await asyncio.sleep(0.05)
        return connector, recorder

    connector, recorder = asyncio.run(scenario())

    assert recorder.events == []
    assert not connector.is_open


def test_reopen_replaces_the_previous_connection_without_reporting_failure():
    async def scenario():
        release = asyncio.Event()
        requests = []

        async def body():
            yield b'data: {"type":"connected","clientId":"abc"}\n\n'
            await release.wait()

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, content=body())

        recorder = _Recorder()
        connector = PushConnector(recorder, generation=1, client_factory=_client_factory(handler))

        connector.open(STREAM_URL)
        await asyncio.wait_for(recorder.handshake_seen.wait(), timeout=2)
        recorder.handshake_seen.clear()

        connector.open(STREAM_URL)
        await asyncio.wait_for(recorder.handshake_seen.wait(), timeout=2)

        connector.close()
        release.set()
        await asyncio.sleep(0.05)
        return requests, recorder

    requests, recorder = asyncio.run(scenario())

    assert len(requests) == 2
    assert recorder.handshakes == 2
    assert EventKind.FAILED not in recorder.kinds


def test_undecodable_nesting_is_a_protocol_error_and_stream_continues():
    async def body():
        yield b"data: " + b"[" * 200_000 + b"\n\n"
        yield b'data: {"summary":{"totalRequests":8}}\n\n'

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    async def scenario():
        recorder = _Recorder()
        connector = PushConnector(recorder, generation=1, client_factory=_client_factory(handler))
        connector.open(STREAM_URL)
        await asyncio.wait_for(recorder.failed.wait(), timeout=5)
        return connector, recorder

    connector, recorder = asyncio.run(scenario())

    assert recorder.kinds == [EventKind.OPENED, EventKind.ERROR, EventKind.TELEMETRY, EventKind.FAILED]
    assert recorder.events[1].error.kind == "protocol"
    assert recorder.events[2].snapshot.summary.total_requests == 8
    assert recorder.events[3].error.message == "Stream closed by server"
    assert not connector.is_open


def test_unexpected_reader_error_is_reported_as_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("client bug")

    async def scenario():
        recorder = _Recorder()
        connector = PushConnector(recorder, generation=2, client_factory=_client_factory(handler))
        connector.open(STREAM_URL)
        await asyncio.wait_for(recorder.failed.wait(), timeout=2)
        await connector.wait_closed()
        return connector, recorder

    connector, recorder = asyncio.run(scenario())

    assert recorder.kinds == [EventKind.FAILED]
    assert recorder.events[0].error.kind == "transport"
    assert "RuntimeError" in recorder.events[0].error.message
    assert not connector.is_open


def test_wait_closed_waits_for_cancelled_reader():
    async def scenario():
        opened = asyncio.Event()

        async def body():
            yield b'data: {"type":"connected","clientId":"abc"}\n\n'
            await asyncio.sleep(60)

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body())

        def recorder(event):
            if event.kind is EventKind.HANDSHAKE:
                opened.set()

        connector = PushConnector(recorder, generation=1, client_factory=_client_factory(handler))
        connector.open(STREAM_URL)
        await asyncio.wait_for(opened.wait(), timeout=2)
        reader = connector._task
        connector.close()
        await asyncio.wait_for(connector.wait_closed(), timeout=2)
        return reader

    reader = asyncio.run(scenario())

    assert reader.done()
