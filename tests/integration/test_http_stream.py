"""Integration tests for DeltaStream over the HTTP transport.

Runs the real engine, decoder and httpx request/streaming code against a
stub delta API mounted as an httpx.MockTransport. Only the socket is fake:
bodies are async byte iterators, so chunk boundaries and long-lived
connections behave as they do on the wire.
"""

import asyncio
from collections.abc import AsyncIterator

import httpx
import pytest

from delta_stream.client import DeltaClient
from delta_stream.config import ClientConfig, StreamConfig
from delta_stream.stream import StreamState
from delta_stream.transport import HTTPStreamTransport

API = "https://api.test"

# =============================================================================
# Stub delta API (not a mock - real HTTP semantics, scripted bodies)
# =============================================================================


class StubDeltaServer:
    """Answers latest-cursor calls and replays one scripted body per stream."""

    def __init__(self, latest_cursor: str = "latest"):
        self.latest_cursor = latest_cursor
        self.requests: list[httpx.Request] = []
        self._bodies: list[tuple[int, list[bytes], bool]] = []

    def add_body(self, status: int, chunks: list[bytes], hold_open: bool = False) -> None:
        self._bodies.append((status, chunks, hold_open))

    @property
    def stream_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/delta/streaming"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/delta/latest_cursor":
            return httpx.Response(200, json={"cursor": self.latest_cursor})

        # Once the script runs out, connections stay open and silent
        status, chunks, hold_open = self._bodies.pop(0) if self._bodies else (200, [], True)
        return httpx.Response(status, content=self._body(chunks, hold_open))

    async def _body(self, chunks: list[bytes], hold_open: bool) -> AsyncIterator[bytes]:
        for chunk in chunks:
            yield chunk
            await asyncio.sleep(0)
        if hold_open:
            await asyncio.sleep(3600)


@pytest.fixture
def server() -> StubDeltaServer:
    return StubDeltaServer()


def make_client(server: StubDeltaServer, stream_config: StreamConfig) -> DeltaClient:
    config = ClientConfig(api_server=API, access_token="tok")
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(server.handler),
        base_url=API,
        auth=httpx.BasicAuth("tok", ""),
    )
    return DeltaClient(config, stream_config=stream_config, transport=HTTPStreamTransport(config, client=http))


STEADY = StreamConfig(streaming_timeout=5.0, initial_delay=0.001, max_delay=0.002)
FAST = StreamConfig(streaming_timeout=0.05, initial_delay=0.001, max_delay=0.002, randomization_factor=0.0)


# =============================================================================
# Tests
# =============================================================================


class TestStreaming:
    @pytest.mark.asyncio
    async def test_latest_cursor_then_stream(self, server, recorder):
        """Fetch the latest cursor, stream from it, follow deltas split across chunks."""
        server.add_body(
            200,
            [
                b"\n",
                b'{"cursor":"c1","object":"thread","event":"create","attributes":{"subject":"Hi',
                b' \xe2\x98',
                b'\x83"}}\n\n{"cursor":"c2","obj',
                b'ect":"message","event":"modify"}\n',
            ],
            hold_open=True,
        )
        client = make_client(server, STEADY)

        stream = await client.start_stream(include_types=["thread", "message"])
        stream.on("*", recorder)
        await recorder.wait_for_count("delta", 2)

        assert recorder.types == ["response", "delta", "delta"]
        first = recorder.events[1].delta
        assert first.attributes == {"subject": "Hi ☃"}
        assert stream.cursor == "c2"

        latest, streaming = server.requests
        assert latest.method == "POST"
        assert latest.url.path == "/delta/latest_cursor"
        assert streaming.method == "GET"
        assert streaming.url.params["cursor"] == "latest"
        assert streaming.url.params["include_types"] == "thread,message"
        assert streaming.headers["Authorization"].startswith("Basic ")

        await asyncio.wait_for(stream.aclose(), 1.0)
        assert stream.state == StreamState.CLOSED
        await client.aclose()

    @pytest.mark.asyncio
    async def test_error_status_then_recovery(self, server, recorder):
        server.add_body(503, [b'{"message":"Service Unavailable","type":"api_error"}'])
        server.add_body(200, [b'{"cursor":"def"}\n'], hold_open=True)
        client = make_client(server, STEADY)

        stream = await client.start_stream("abc")
        stream.on("*", recorder)
        await recorder.wait_for_count("delta", 1)

        assert recorder.types == ["error", "info", "response", "delta"]
        error = recorder.events[0]
        assert error.data["error"] == "Service Unavailable"
        assert error.data["details"]["status_code"] == 503
        assert [r.url.params["cursor"] for r in server.stream_requests] == ["abc", "abc"]

        await stream.aclose()

    @pytest.mark.asyncio
    async def test_stall_reconnects_at_last_cursor(self, server, recorder):
        server.add_body(200, [b'{"cursor":"c1"}\n'], hold_open=True)
        client = make_client(server, FAST)

        stream = await client.start_stream("c0")
        stream.on("*", recorder)
        await recorder.wait_for(lambda: len(server.stream_requests) >= 2)

        assert recorder.of_type("info")[0].data["reason"] == "stalled"
        assert [r.url.params["cursor"] for r in server.stream_requests[:2]] == ["c0", "c1"]
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_silent_server_exhausts_retries(self, server, recorder):
        config = StreamConfig(
            streaming_timeout=0.03,
            max_restart_retries=2,
            initial_delay=0.001,
            max_delay=0.002,
        )
        client = make_client(server, config)

        stream = await client.start_stream("c0")
        stream.on("error", recorder)
        await asyncio.wait_for(stream.wait_closed(), 2.0)

        assert stream.state == StreamState.FAILED
        assert len(server.stream_requests) == 3
        assert len(recorder.events) == 1
        assert recorder.events[0].fatal is True
        await client.aclose()
