"""Unit tests for DeltaClient."""

import pytest

from delta_stream.client import DeltaClient, create_client
from delta_stream.config import ClientConfig, StreamConfig
from delta_stream.errors import ProtocolError, SetupError
from delta_stream.stream import StreamState
from delta_stream.transport import HTTPStreamTransport, MockStreamResponse, MockStreamTransport


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(api_server="https://api.test", access_token="tok")


@pytest.fixture
def client(config, transport) -> DeltaClient:
    return DeltaClient(config, stream_config=StreamConfig(streaming_timeout=5.0), transport=transport)


class TestLatestCursor:
    @pytest.mark.asyncio
    async def test_returns_cursor(self, client, transport):
        transport.set_response("POST", "/delta/latest_cursor", {"cursor": "c42"})

        assert await client.latest_cursor() == "c42"
        assert transport.recorded_requests[0].method == "POST"

    @pytest.mark.asyncio
    async def test_missing_cursor_in_body(self, client, transport):
        transport.set_response("POST", "/delta/latest_cursor", {})
        with pytest.raises(SetupError):
            await client.latest_cursor()

    @pytest.mark.asyncio
    async def test_error_status_propagates(self, client, transport):
        transport.set_response("POST", "/delta/latest_cursor", ProtocolError(401, {"message": "bad token"}))
        with pytest.raises(ProtocolError):
            await client.latest_cursor()

    @pytest.mark.asyncio
    async def test_requires_token(self, transport):
        client = DeltaClient(ClientConfig(), transport=transport)
        with pytest.raises(SetupError, match="access token"):
            await client.latest_cursor()
        assert transport.recorded_requests == []


class TestStreams:
    @pytest.mark.asyncio
    async def test_stream_is_built_unopened(self, client, transport):
        stream = client.stream("abc", include_types=["thread"], view="count")

        assert stream.state == StreamState.CLOSED
        assert stream.cursor == "abc"
        assert stream.params.to_query("abc") == {
            "view": "count",
            "cursor": "abc",
            "include_types": "thread",
        }
        assert transport.recorded_requests == []

    @pytest.mark.asyncio
    async def test_start_stream_with_cursor(self, client, transport, recorder):
        transport.add_stream(MockStreamResponse(200, [b'{"cursor":"def"}\n'], hold_open=True))

        stream = await client.start_stream("abc", exclude_types=["contact"])
        stream.on("delta", recorder)
        await recorder.wait_for_count("delta", 1)

        assert transport.stream_requests[0].params == {"cursor": "abc", "exclude_types": "contact"}
        assert stream.cursor == "def"
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_start_stream_fetches_latest_cursor(self, client, transport, recorder):
        transport.set_response("POST", "/delta/latest_cursor", {"cursor": "latest"})

        stream = await client.start_stream()
        stream.on("response", recorder)
        await recorder.wait_for_count("response", 1)

        assert [r.method for r in transport.recorded_requests] == ["POST", "STREAM"]
        assert transport.stream_requests[0].params["cursor"] == "latest"
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_start_stream_requires_token(self, transport):
        client = DeltaClient(ClientConfig(), transport=transport)
        with pytest.raises(SetupError):
            await client.start_stream("abc")
        assert transport.recorded_requests == []


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_injected_transport_is_not_closed(self, config):
        transport = MockStreamTransport()
        async with DeltaClient(config, transport=transport):
            pass
        assert transport.closed is False

    @pytest.mark.asyncio
    async def test_owned_transport_is_closed(self, config):
        client = DeltaClient(config)
        assert isinstance(client.transport, HTTPStreamTransport)
        await client.aclose()


class TestCreateClient:
    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("DELTA_STREAM_ACCESS_TOKEN", "env-token")
        monkeypatch.setenv("DELTA_STREAM_API_SERVER", "http://localhost:5555")

        client = create_client()
        assert client.config.access_token == "env-token"
        assert client.config.api_server == "http://localhost:5555"

    def test_arguments_override_environment(self, monkeypatch):
        monkeypatch.setenv("DELTA_STREAM_ACCESS_TOKEN", "env-token")

        client = create_client(access_token="arg-token", api_server="https://api.test/")
        assert client.config.access_token == "arg-token"
        assert client.config.api_server == "https://api.test"

    def test_invalid_api_server(self, monkeypatch):
        monkeypatch.delenv("DELTA_STREAM_API_SERVER", raising=False)
        with pytest.raises(SetupError):
            create_client(api_server="localhost")
