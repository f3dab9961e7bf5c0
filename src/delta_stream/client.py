"""Delta client - entry point for cursor lookups and streams.

Usage:
    async with create_client(access_token="...") as client:
        cursor = await client.latest_cursor()
        stream = await client.start_stream(cursor, include_types=["thread"])
        async for event in stream:
            ...
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from .config import ClientConfig, StreamConfig, StreamParams
from .errors import SetupError
from .stream import DeltaStream
from .transport import HTTPStreamTransport, StreamTransport

logger = logging.getLogger(__name__)


class DeltaClient:
    """Client for the delta endpoints of one account."""

    def __init__(
        self,
        config: ClientConfig,
        stream_config: StreamConfig | None = None,
        transport: StreamTransport | None = None,
    ):
        self.config = config
        self.stream_config = stream_config or StreamConfig()
        self._transport: StreamTransport = transport or HTTPStreamTransport(config)
        self._owns_transport = transport is None

    @property
    def transport(self) -> StreamTransport:
        return self._transport

    async def latest_cursor(self) -> str:
        """Fetch the cursor for the most recent delta.

        Raises:
            SetupError: If no access token is configured or no cursor came back
            ProtocolError: On a non-2xx response
            TransportError: If the request could not be sent
        """
        self.config.require_token()
        body = await self._transport.request("POST", self.stream_config.latest_cursor_path)
        cursor = body.get("cursor") if isinstance(body, dict) else None
        if not cursor:
            raise SetupError("Latest cursor response did not include a cursor")
        logger.debug(f"Latest cursor: {cursor}")
        return str(cursor)

    def stream(
        self,
        cursor: str | None = None,
        *,
        include_types: Iterable[str] = (),
        exclude_types: Iterable[str] = (),
        expanded: bool = False,
        **extra: Any,
    ) -> DeltaStream:
        """Build a stream without opening it."""
        params = StreamParams(
            include_types=tuple(include_types),
            exclude_types=tuple(exclude_types),
            expanded=expanded,
            extra=extra,
        )
        return DeltaStream(self._transport, cursor=cursor, params=params, config=self.stream_config)

    async def start_stream(
        self,
        cursor: str | None = None,
        *,
        include_types: Iterable[str] = (),
        exclude_types: Iterable[str] = (),
        expanded: bool = False,
        **extra: Any,
    ) -> DeltaStream:
        """Open a stream, starting at the latest cursor if none is given.

        Args:
            cursor: Delta cursor to resume from
            include_types: Object types to exclusively return deltas for
            exclude_types: Object types to not return deltas for
            expanded: Request the expanded view of each object
            **extra: Additional query string parameters

        Raises:
            SetupError: If no access token is configured
        """
        self.config.require_token()
        if not cursor:
            cursor = await self.latest_cursor()
        stream = self.stream(
            cursor,
            include_types=include_types,
            exclude_types=exclude_types,
            expanded=expanded,
            **extra,
        )
        stream.open()
        return stream

    async def aclose(self) -> None:
        """Close the transport if this client created it."""
        if self._owns_transport:
            await self._transport.aclose()

    async def __aenter__(self) -> DeltaClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()


def create_client(
    access_token: str | None = None,
    api_server: str | None = None,
    stream_config: StreamConfig | None = None,
) -> DeltaClient:
    """Create a client over HTTP.

    Unset arguments fall back to the DELTA_STREAM_* environment variables.

    Args:
        access_token: Account access token
        api_server: API server URL (default: https://api.nylas.com)
        stream_config: Streaming timeouts and reconnect policy

    Returns:
        DeltaClient configured for HTTP
    """
    config = ClientConfig.from_env()
    if access_token:
        config.access_token = access_token
    if api_server:
        config = ClientConfig(
            api_server=api_server,
            access_token=config.access_token,
            timeout=config.timeout,
        )
    return DeltaClient(config, stream_config=stream_config)
