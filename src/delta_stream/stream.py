"""Delta stream engine.

A DeltaStream holds one long-lived streaming GET open against the delta
endpoint and turns its bytes into events. It keeps the connection alive
across stalls and errors, always resuming from the last cursor it saw.

State machine:

    closed --open()--> connecting --2xx--> streaming
    connecting --non-2xx / transport error--> reconnecting
    streaming --stall / transport error / decode error / EOF--> reconnecting
    reconnecting --delay elapsed--> connecting
    reconnecting --retries exhausted--> failed
    any --close()--> closed

The engine only sequences three collaborators (HeartbeatWatchdog,
IncrementalJSONDecoder, BackoffController) and owns the one piece of state
that survives a reconnect: the cursor.

Everything runs on a single asyncio task per stream. ``close()`` bumps a
generation counter, so callbacks or reads still in flight for an older
connection are ignored instead of emitting events.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum
from typing import Any

from .backoff import BackoffController
from .config import StreamConfig, StreamParams
from .decoder import IncrementalJSONDecoder
from .errors import (
    BackoffExhaustedError,
    DecodeError,
    DeltaStreamError,
    ProtocolError,
    SetupError,
    TransportError,
)
from .events import Delta, StreamEvent, StreamEventType
from .transport import StreamResponse, StreamTransport, parse_error_body
from .watchdog import HeartbeatWatchdog

logger = logging.getLogger(__name__)

EventCallback = Callable[[StreamEvent], Awaitable[None] | None]

ALL_EVENTS = "*"

_END = object()


class StreamState(str, Enum):
    """Lifecycle of a delta stream."""

    CLOSED = "closed"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


_ACTIVE_STATES = (StreamState.CONNECTING, StreamState.STREAMING, StreamState.RECONNECTING)


class DeltaStream:
    """A resumable connection to the delta streaming API.

    Emits the following events (see ``StreamEventType``):
    - ``response`` when a connection is established
    - ``delta`` for each delta received
    - ``info`` when the connection status changes (reconnects)
    - ``error`` for recoverable errors, and once with ``fatal=True`` when
      reconnecting gave up

    Usage:
        stream = DeltaStream(transport, cursor="abc", params=StreamParams(include_types=["thread"]))
        stream.on("delta", handle_delta)
        stream.open()
        ...
        await stream.aclose()

    Or as an async iterator:
        async with stream:
            async for event in stream:
                ...
    """

    def __init__(
        self,
        transport: StreamTransport,
        cursor: str | None = None,
        params: StreamParams | None = None,
        config: StreamConfig | None = None,
        backoff: BackoffController | None = None,
    ):
        self._transport = transport
        self.config = config or StreamConfig()
        self.params = params or StreamParams()
        self._cursor = cursor or None
        self._backoff = backoff or BackoffController.from_config(self.config)
        self._watchdog = HeartbeatWatchdog(self._on_stall)
        self._decoder = IncrementalJSONDecoder()

        self._state = StreamState.CLOSED
        self._generation = 0
        self._task: asyncio.Task[None] | None = None
        self._stalled: asyncio.Event | None = None
        self._listeners: dict[str, list[EventCallback]] = {}
        self._subscribers: list[asyncio.Queue[Any]] = []

    # -------------------------------------------------------------------------
    # Read-only state
    # -------------------------------------------------------------------------

    @property
    def cursor(self) -> str | None:
        """Last acknowledged resume position."""
        return self._cursor

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def attempt(self) -> int:
        """Consecutive reconnects since data was last received."""
        return self._backoff.attempt

    @property
    def is_open(self) -> bool:
        return self._state in _ACTIVE_STATES

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def on(self, event_type: StreamEventType | str, callback: EventCallback) -> Callable[[], None]:
        """Register a listener for one event type, or ``"*"`` for all.

        Callbacks may be plain functions or coroutine functions; they run in
        emission order on the stream's task. Exceptions raised by a callback
        are logged and do not affect the stream.

        Returns:
            Unsubscribe function
        """
        key = event_type.value if isinstance(event_type, StreamEventType) else event_type
        self._listeners.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            if key in self._listeners and callback in self._listeners[key]:
                self._listeners[key].remove(callback)

        return unsubscribe

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield every event of the current (or next) session in order.

        Finishes when the session is closed or has failed.
        """
        queue: asyncio.Queue[Any] = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    return
                yield item
        finally:
            self._subscribers.remove(queue)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self.events()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def open(self, cursor: str | None = None) -> None:
        """Start streaming; closes any previous session first.

        The previous connection is released as its task unwinds, which may
        overlap the new one briefly. ``reopen()`` waits for the release.

        Args:
            cursor: Restart from this cursor instead of the last one seen

        Raises:
            SetupError: If there is no cursor to start from
            RuntimeError: If called without a running event loop
        """
        self.close()
        if cursor:
            self._cursor = cursor
        if not self._cursor:
            raise SetupError("A cursor is required to open a delta stream")

        loop = asyncio.get_running_loop()
        self._generation += 1
        self._state = StreamState.CONNECTING
        self._task = loop.create_task(self._run(self._generation), name="delta-stream")
        logger.info(f"Opening delta stream at cursor {self._cursor}")

    def close(self) -> None:
        """Stop streaming and release the connection. Idempotent.

        No events are emitted once this returns. The connection itself is
        closed by the stream task as it unwinds; use ``aclose()`` to wait
        for that.
        """
        was_active = self.is_open
        self._generation += 1
        self._watchdog.disarm()
        self._backoff.reset()
        self._stalled = None

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

        self._state = StreamState.CLOSED
        if was_active:
            logger.info("Delta stream closed")
            self._end_subscribers()

    async def aclose(self) -> None:
        """Close and wait until the connection has been released."""
        task = self._task
        self.close()
        if task is not None:
            await asyncio.wait({task})

    async def reopen(self, cursor: str | None = None) -> None:
        """Close, wait until the old connection is released, then open.

        Raises:
            SetupError: If there is no cursor to start from
        """
        await self.aclose()
        self.open(cursor)

    async def wait_closed(self) -> None:
        """Wait until the current session ends (closed or failed)."""
        task = self._task
        if task is not None:
            await asyncio.wait({task})

    async def __aenter__(self) -> DeltaStream:
        if not self.is_open:
            self.open()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    # -------------------------------------------------------------------------
    # Stream task
    # -------------------------------------------------------------------------

    async def _run(self, generation: int) -> None:
        try:
            while True:
                reason = await self._connect_once(generation)
                if generation != self._generation:
                    return

                if self._backoff.has_exceeded_limit():
                    await self._fail(generation, BackoffExhaustedError(self._backoff.attempt))
                    return

                delay = self._backoff.next_delay()
                attempt = self._backoff.attempt
                self._state = StreamState.RECONNECTING
                logger.warning(
                    f"Restarting delta stream connection (attempt {attempt}) "
                    f"in {delay:.2f}s: {reason}"
                )
                await self._emit(
                    generation,
                    StreamEvent.info(
                        f"Restarting delta stream connection (attempt {attempt}): {reason}",
                        cursor=self._cursor,
                        attempt=attempt,
                        delay=delay,
                        reason=reason,
                    ),
                )
                await asyncio.sleep(delay)
                if generation != self._generation:
                    return
                self._state = StreamState.CONNECTING
        except SetupError as e:
            await self._fail(generation, e)
        except Exception as e:
            logger.exception("Delta stream task crashed")
            await self._fail(generation, e)

    async def _connect_once(self, generation: int) -> str:
        """Run one connection to completion; return why it ended."""
        query = self.params.to_query(self._cursor)
        timeout = self.config.streaming_timeout
        try:
            response = await asyncio.wait_for(
                self._transport.open_stream(self.config.streaming_path, query), timeout
            )
        except TimeoutError:
            logger.warning(f"No response within {timeout}s")
            return "stalled"
        except SetupError:
            raise
        except Exception as e:
            error = e if isinstance(e, DeltaStreamError) else TransportError(str(e))
            await self._emit_error(generation, error)
            return "connection failed"

        try:
            if generation != self._generation:
                return "closed"
            if not 200 <= response.status_code < 300:
                await self._emit_error(generation, await self._read_error(response))
                return f"HTTP {response.status_code}"

            logger.info(f"Delta stream connected ({response.status_code}) at cursor {self._cursor}")
            self._state = StreamState.STREAMING
            await self._emit(
                generation, StreamEvent.response_established(response, cursor=self._cursor)
            )
            if generation != self._generation:
                return "closed"
            return await self._consume(generation, response)
        finally:
            if generation == self._generation:
                self._watchdog.disarm()
            await response.aclose()

    async def _read_error(self, response: StreamResponse) -> ProtocolError:
        try:
            raw = await asyncio.wait_for(response.aread(), self.config.streaming_timeout)
            body = parse_error_body(raw)
        except Exception as e:
            logger.debug(f"Could not read error body: {e}")
            body = None
        return ProtocolError(response.status_code, body)

    async def _consume(self, generation: int, response: StreamResponse) -> str:
        """Pump bytes until the connection stalls, fails or ends."""
        self._decoder.reset()
        stalled = asyncio.Event()
        self._stalled = stalled
        self._watchdog.arm(self.config.streaming_timeout)

        reader = asyncio.create_task(self._pump(generation, response))
        watcher = asyncio.create_task(stalled.wait())
        try:
            done, _ = await asyncio.wait({reader, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            reader.cancel()
            watcher.cancel()
            await asyncio.gather(reader, watcher, return_exceptions=True)
            if self._stalled is stalled:
                self._stalled = None

        if reader in done:
            return reader.result()
        logger.warning(f"No data received for {self.config.streaming_timeout}s")
        return "stalled"

    async def _pump(self, generation: int, response: StreamResponse) -> str:
        try:
            async for chunk in response.aiter_bytes():
                if generation != self._generation:
                    return "closed"
                if not chunk:
                    continue
                self._on_data_received(len(chunk))
                for value in self._decoder.feed(chunk):
                    await self._handle_value(generation, value)
                    if generation != self._generation:
                        return "closed"
            for value in self._decoder.flush():
                await self._handle_value(generation, value)
        except DecodeError as e:
            logger.warning(f"Delta stream decode error: {e}")
            await self._emit_error(generation, e)
            return "decode error"
        except Exception as e:
            error = e if isinstance(e, DeltaStreamError) else TransportError(f"Connection lost: {e}")
            await self._emit_error(generation, error)
            return "connection lost"
        return "stream ended"

    async def _handle_value(self, generation: int, value: Any) -> None:
        delta = Delta.from_value(value)
        cursor = delta.resume_cursor()
        if cursor is not None:
            self._cursor = cursor
        await self._emit(generation, StreamEvent.delta_received(delta, cursor=self._cursor))

    def _on_data_received(self, size: int) -> None:
        # Any byte counts, including the newline heartbeat
        logger.debug(f"Received {size} bytes")
        self._watchdog.on_data()
        self._backoff.reset()

    def _on_stall(self) -> None:
        if self._stalled is not None:
            self._stalled.set()

    async def _fail(self, generation: int, error: Exception) -> None:
        if generation != self._generation:
            return
        self._watchdog.disarm()
        self._state = StreamState.FAILED
        logger.error(f"Delta stream failed: {error}")
        await self._emit_error(generation, error, fatal=True)
        self._end_subscribers()

    # -------------------------------------------------------------------------
    # Emission
    # -------------------------------------------------------------------------

    async def _emit_error(self, generation: int, error: Exception, fatal: bool = False) -> None:
        details: dict[str, Any] = {}
        if isinstance(error, ProtocolError):
            details = {"status_code": error.status_code, "body": error.body}
        elif isinstance(error, DecodeError):
            details = {"offset": error.offset}
        elif isinstance(error, BackoffExhaustedError):
            details = {"attempts": error.attempts}
        code = error.code if isinstance(error, DeltaStreamError) else "internal_error"
        message = error.message if isinstance(error, ProtocolError) and error.message else str(error)
        await self._emit(
            generation,
            StreamEvent.error(
                message,
                code=code,
                details=details,
                fatal=fatal,
                exception=error,
                cursor=self._cursor,
            ),
        )

    async def _emit(self, generation: int, event: StreamEvent) -> None:
        if generation != self._generation:
            return
        for queue in self._subscribers:
            queue.put_nowait(event)

        callbacks = list(self._listeners.get(event.type, []))
        callbacks += self._listeners.get(ALL_EVENTS, [])
        for callback in callbacks:
            if generation != self._generation:
                return
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Error in {event.type} listener")

    def _end_subscribers(self) -> None:
        for queue in self._subscribers:
            queue.put_nowait(_END)
