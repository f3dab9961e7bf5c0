"""Transport abstraction for the delta stream.

The stream needs exactly one thing from the network: issue a GET with a query
string, get back a status and a readable byte sequence, and be able to abort
it. One-shot requests (the latest cursor call) go through the same object.

Architecture:
- StreamTransport is the PROTOCOL every transport implements
- HTTPStreamTransport talks to the real API with httpx
- MockStreamTransport replays scripted responses in-process, for tests and
  for embedding without network I/O
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from .config import ClientConfig
from .errors import ProtocolError, TransportError

logger = logging.getLogger(__name__)


@runtime_checkable
class StreamResponse(Protocol):
    """What the stream needs from a response; ``httpx.Response`` fits."""

    @property
    def status_code(self) -> int: ...

    @property
    def headers(self) -> Mapping[str, str]: ...

    def aiter_bytes(self) -> AsyncIterator[bytes]: ...

    async def aread(self) -> bytes: ...

    async def aclose(self) -> None: ...


@runtime_checkable
class StreamTransport(Protocol):
    """Protocol for delta stream transports.

    All transports must implement:
    - open_stream: start a streaming GET and return once headers arrived
    - request: a one-shot call returning decoded JSON
    - aclose: release pooled connections
    """

    async def open_stream(self, path: str, params: Mapping[str, Any]) -> StreamResponse:
        """Issue a streaming GET.

        Raises:
            TransportError: If the connection could not be established
        """
        ...

    async def request(
        self,
        method: str,
        path: str,
        json_body: Mapping[str, Any] | None = None,
    ) -> Any:
        """Issue a one-shot request and return the decoded JSON body.

        Raises:
            ProtocolError: On a non-2xx response
            TransportError: If the request could not be sent
        """
        ...

    async def aclose(self) -> None:
        """Close the transport."""
        ...


def parse_error_body(raw: bytes) -> Any:
    """Decode an error body as JSON, falling back to text."""
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class HTTPStreamTransport:
    """Transport over HTTP using a single pooled ``httpx.AsyncClient``.

    The access token is sent as the basic-auth user name with an empty
    password. Streaming requests have no read timeout; stall detection is
    left to the heartbeat watchdog.
    """

    def __init__(self, config: ClientConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client
        self._owns_client = client is None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            token = self.config.require_token()
            self._client = httpx.AsyncClient(
                base_url=self.config.api_server,
                timeout=httpx.Timeout(self.config.timeout, read=None),
                auth=httpx.BasicAuth(token, ""),
                headers={"User-Agent": self.config.user_agent},
            )
        return self._client

    async def open_stream(self, path: str, params: Mapping[str, Any]) -> httpx.Response:
        client = self._ensure_client()
        request = client.build_request("GET", path, params=dict(params))
        logger.debug(f"GET {request.url}")
        try:
            return await client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to open stream: {e}") from e

    async def request(
        self,
        method: str,
        path: str,
        json_body: Mapping[str, Any] | None = None,
    ) -> Any:
        client = self._ensure_client()
        try:
            response = await client.request(
                method,
                path,
                json=dict(json_body) if json_body is not None else None,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e
        if not response.is_success:
            raise ProtocolError(response.status_code, parse_error_body(response.content))
        return response.json()

    async def aclose(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
        self._client = None


# =============================================================================
# Mock transport
# =============================================================================

_EOF = object()


class MockStreamResponse:
    """Scripted streaming response.

    ``chunks`` are delivered in order; with ``hold_open=True`` the body does
    not end after them, and more chunks can be pushed with ``feed()`` until
    ``finish()`` (or ``fail()``) is called. This is how tests simulate a
    silent-but-open connection.
    """

    def __init__(
        self,
        status_code: int = 200,
        chunks: list[bytes] | None = None,
        headers: Mapping[str, str] | None = None,
        hold_open: bool = False,
    ):
        self.status_code = status_code
        self.headers: dict[str, str] = dict(headers or {})
        self.url = ""
        self.closed = False
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        for chunk in chunks or []:
            self._queue.put_nowait(chunk)
        if not hold_open:
            self._queue.put_nowait(_EOF)

    def feed(self, chunk: bytes) -> None:
        """Push one more chunk into the body."""
        self._queue.put_nowait(chunk)

    def finish(self) -> None:
        """End the body cleanly."""
        self._queue.put_nowait(_EOF)

    def fail(self, error: BaseException) -> None:
        """Make the body raise ``error`` once the queued chunks are read."""
        self._queue.put_nowait(error)

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        while not self.closed:
            item = await self._queue.get()
            if item is _EOF:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    async def aread(self) -> bytes:
        parts = []
        async for chunk in self.aiter_bytes():
            parts.append(chunk)
        return b"".join(parts)

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class RecordedRequest:
    """A call made through MockStreamTransport."""

    method: str
    path: str
    params: dict[str, Any] = field(default_factory=dict)
    json_body: dict[str, Any] | None = None


class MockStreamTransport:
    """Mock transport for testing.

    Allows queueing predefined stream responses and recording requests.
    No actual I/O - everything is in-memory.

    Usage:
        transport = MockStreamTransport()
        transport.add_stream(MockStreamResponse(200, [b'{"cursor": "c1"}\\n']))
        transport.set_response("POST", "/delta/latest_cursor", {"cursor": "c0"})

        stream = DeltaStream(transport, cursor="c0")
        stream.open()

        assert transport.stream_requests[0].params["cursor"] == "c0"

    When the scripted streams run out, further ``open_stream`` calls get a
    held-open response that never sends anything.
    """

    def __init__(self) -> None:
        self._streams: list[MockStreamResponse | BaseException] = []
        self._responses: dict[tuple[str, str], Any] = {}
        self._recorded: list[RecordedRequest] = []
        self.opened: list[MockStreamResponse] = []
        self.closed = False

    @property
    def recorded_requests(self) -> list[RecordedRequest]:
        """Get all requests sent through this transport."""
        return self._recorded.copy()

    @property
    def stream_requests(self) -> list[RecordedRequest]:
        """Only the streaming GET requests."""
        return [r for r in self._recorded if r.method == "STREAM"]

    def add_stream(self, response: MockStreamResponse | BaseException) -> None:
        """Queue the outcome of the next ``open_stream`` call.

        An exception instance is raised instead of returning a response.
        """
        self._streams.append(response)

    def set_response(self, method: str, path: str, body: Any) -> None:
        """Set canned body for a one-shot request.

        A ProtocolError or TransportError instance is raised instead.
        """
        self._responses[(method.upper(), path)] = body

    async def open_stream(self, path: str, params: Mapping[str, Any]) -> MockStreamResponse:
        self._recorded.append(RecordedRequest("STREAM", path, dict(params)))
        outcome = self._streams.pop(0) if self._streams else MockStreamResponse(hold_open=True)
        if isinstance(outcome, BaseException):
            raise outcome
        outcome.url = path
        self.opened.append(outcome)
        return outcome

    async def request(
        self,
        method: str,
        path: str,
        json_body: Mapping[str, Any] | None = None,
    ) -> Any:
        method = method.upper()
        self._recorded.append(
            RecordedRequest(method, path, json_body=dict(json_body) if json_body else None)
        )
        key = (method, path)
        if key not in self._responses:
            raise ProtocolError(404, {"message": f"No mock response for {method} {path}"})
        body = self._responses[key]
        if isinstance(body, BaseException):
            raise body
        return body

    async def aclose(self) -> None:
        self.closed = True
