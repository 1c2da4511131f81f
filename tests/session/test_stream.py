"""Tests for the reconnecting session stream client."""

import asyncio
import json
from collections import Counter
from collections.abc import AsyncIterator, Callable

import httpx
from pydantic import ValidationError

from laminar_rollout.exceptions import StreamConnectionError
from laminar_rollout.protocol import RolloutParam
from laminar_rollout.session import HandshakeEvent, RunRequest, SessionStreamClient, StreamState

HANDSHAKE = 'event: handshake\ndata: {"project_id": "proj-1", "session_id": "sess-1"}\n\n'


class FakeEventStream(httpx.AsyncByteStream):
    """Response body yielding SSE chunks, optionally hanging open afterwards."""

    def __init__(self, *chunks: str, hang: bool = False) -> None:
        self.chunks = chunks
        self.hang = hang

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            yield chunk.encode()
        if self.hang:
            await asyncio.Event().wait()


def make_client(respond: Callable[[httpx.Request, int], httpx.Response], **kwargs) -> SessionStreamClient:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        return respond(request, attempts)

    options = {"heartbeat_interval": 0.05, "max_missed_heartbeats": 3, "reconnect_delay": 0.05, **kwargs}
    return SessionStreamClient(
        base_url="http://localhost:8000",
        project_api_key="secret",
        session_id="sess-1",
        name="agent",
        params=[RolloutParam(name="question", type="str", required=True)],
        transport=httpx.MockTransport(handler),
        **options,
    )


def record_events(client: SessionStreamClient, *names: str) -> Counter:
    counts: Counter = Counter()
    for name in names:
        client.on(name, lambda *args, _name=name: counts.update([_name]))  # type: ignore[arg-type]
    return counts


def shutdown_after(client: SessionStreamClient, event: str, times: int) -> None:
    seen = 0

    def handler(*args) -> None:
        nonlocal seen
        seen += 1
        if seen >= times:
            client.shutdown()

    client.on(event, handler)  # type: ignore[arg-type]


class TestSessionStreamClient:
    async def test_announces_function_on_connect(self):
        requests: list[httpx.Request] = []

        def respond(request: httpx.Request, attempt: int) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, stream=FakeEventStream(HANDSHAKE, hang=True))

        client = make_client(respond)
        shutdown_after(client, "handshake", 1)

        await asyncio.wait_for(client.connect_and_listen(), 5)

        request = requests[0]
        assert request.method == "POST"
        assert str(request.url) == "http://localhost:8000/v1/rollouts/sess-1"
        assert request.headers["Authorization"] == "Bearer secret"
        assert request.headers["Accept"] == "text/event-stream"
        assert json.loads(request.content) == {
            "name": "agent",
            "params": [{"name": "question", "type": "str", "required": True}],
        }
        assert client.state == StreamState.SHUTDOWN

    async def test_handshake_and_run_events_are_parsed(self):
        body = HANDSHAKE + (
            'event: run\ndata: {"trace_id": "t-1", "path_to_count": {"p": 2}, "args": {"q": "1"}, '
            '"overrides": null}\n\n'
        )
        client = make_client(lambda r, n: httpx.Response(200, stream=FakeEventStream(body, hang=True)))
        handshakes: list[HandshakeEvent] = []
        runs: list[RunRequest] = []
        client.on("handshake", handshakes.append)

        async def on_run(request: RunRequest) -> None:
            runs.append(request)
            client.shutdown()

        client.on("run", on_run)

        await asyncio.wait_for(client.connect_and_listen(), 5)

        assert handshakes == [HandshakeEvent(project_id="proj-1", session_id="sess-1")]
        assert runs[0].trace_id == "t-1"
        assert runs[0].path_to_count == {"p": 2}
        assert runs[0].overrides == {}

    async def test_heartbeat_timeout_fires_once_then_reconnects(self):
        def respond(request: httpx.Request, attempt: int) -> httpx.Response:
            return httpx.Response(200, stream=FakeEventStream(HANDSHAKE, hang=True))

        client = make_client(respond)
        counts = record_events(client, "connected", "heartbeat_timeout", "reconnecting")
        shutdown_after(client, "connected", 2)

        await asyncio.wait_for(client.connect_and_listen(), 5)

        assert counts["heartbeat_timeout"] == 1
        assert counts["connected"] == 2
        assert counts["reconnecting"] == 0

    async def test_heartbeats_keep_connection_alive(self):
        heartbeats = "event: heartbeat\ndata: {}\n\n" * 3

        class SlowHeartbeats(httpx.AsyncByteStream):
            async def __aiter__(self) -> AsyncIterator[bytes]:
                for _ in range(10):
                    yield heartbeats.encode()
                    await asyncio.sleep(0.04)
                await asyncio.Event().wait()

        client = make_client(lambda r, n: httpx.Response(200, stream=SlowHeartbeats()))
        counts = record_events(client, "heartbeat", "heartbeat_timeout")
        shutdown_after(client, "heartbeat", 30)

        await asyncio.wait_for(client.connect_and_listen(), 5)

        assert counts["heartbeat"] == 30
        assert counts["heartbeat_timeout"] == 0

    async def test_stream_end_reconnects_after_delay(self):
        client = make_client(lambda r, n: httpx.Response(200, stream=FakeEventStream(HANDSHAKE)))
        counts = record_events(client, "reconnecting", "error")
        shutdown_after(client, "connected", 3)

        await asyncio.wait_for(client.connect_and_listen(), 5)

        assert counts["reconnecting"] == 2
        assert counts["error"] == 0

    async def test_http_error_emits_error_and_retries(self):
        errors: list[Exception] = []

        def respond(request: httpx.Request, attempt: int) -> httpx.Response:
            if attempt == 1:
                return httpx.Response(401, text="bad key")
            return httpx.Response(200, stream=FakeEventStream(HANDSHAKE, hang=True))

        client = make_client(respond)
        client.on("error", errors.append)
        counts = record_events(client, "reconnecting")
        shutdown_after(client, "handshake", 1)

        await asyncio.wait_for(client.connect_and_listen(), 5)

        assert isinstance(errors[0], StreamConnectionError)
        assert str(errors[0]) == "SSE connection failed: 401 Unauthorized"
        assert counts["reconnecting"] == 1

    async def test_network_error_is_retried(self):
        def respond(request: httpx.Request, attempt: int) -> httpx.Response:
            if attempt < 3:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, stream=FakeEventStream(HANDSHAKE, hang=True))

        client = make_client(respond)
        counts = record_events(client, "error", "reconnecting")
        shutdown_after(client, "handshake", 1)

        await asyncio.wait_for(client.connect_and_listen(), 5)

        assert counts["error"] == 2
        assert counts["reconnecting"] == 2

    async def test_invalid_run_payload_emits_error(self):
        body = HANDSHAKE + 'event: run\ndata: {"path_to_count": "nope"}\n\n'
        client = make_client(lambda r, n: httpx.Response(200, stream=FakeEventStream(body, hang=True)))
        errors: list[Exception] = []

        def on_error(error: Exception) -> None:
            errors.append(error)
            client.shutdown()

        client.on("error", on_error)

        await asyncio.wait_for(client.connect_and_listen(), 5)

        assert isinstance(errors[0], ValidationError)

    async def test_update_metadata_reconnects_with_new_announcement(self):
        bodies: list[dict] = []

        def respond(request: httpx.Request, attempt: int) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, stream=FakeEventStream(HANDSHAKE, hang=True))

        client = make_client(respond, heartbeat_interval=10)
        handshakes = 0

        def on_handshake(event: HandshakeEvent) -> None:
            nonlocal handshakes
            handshakes += 1
            if handshakes == 1:
                client.update_metadata([], "renamed")
            else:
                client.shutdown()

        client.on("handshake", on_handshake)

        await asyncio.wait_for(client.connect_and_listen(), 5)

        assert [body["name"] for body in bodies] == ["agent", "renamed"]
        assert bodies[1]["params"] == []

    async def test_shutdown_is_idempotent_and_prevents_connecting(self):
        client = make_client(lambda r, n: httpx.Response(200, stream=FakeEventStream(HANDSHAKE)))

        client.shutdown()
        client.shutdown()
        await asyncio.wait_for(client.connect_and_listen(), 1)

        assert client.is_shutdown
        assert client.state == StreamState.SHUTDOWN

    async def test_shutdown_interrupts_reconnect_delay(self):
        client = make_client(
            lambda r, n: httpx.Response(200, stream=FakeEventStream(HANDSHAKE)), reconnect_delay=30
        )
        shutdown_after(client, "reconnecting", 1)

        await asyncio.wait_for(client.connect_and_listen(), 2)

        assert client.is_shutdown

    async def test_failing_handler_does_not_stop_stream(self):
        client = make_client(lambda r, n: httpx.Response(200, stream=FakeEventStream(HANDSHAKE, hang=True)))

        def broken(event: HandshakeEvent) -> None:
            raise RuntimeError("handler bug")

        client.on("handshake", broken)
        shutdown_after(client, "handshake", 1)

        await asyncio.wait_for(client.connect_and_listen(), 5)

        assert client.is_shutdown
