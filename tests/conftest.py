"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from delta_stream.config import StreamConfig
from delta_stream.events import StreamEvent
from delta_stream.transport import MockStreamTransport


class EventRecorder:
    """Listener that records every event a stream emits."""

    def __init__(self) -> None:
        self.events: list[StreamEvent] = []

    def __call__(self, event: StreamEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[StreamEvent]:
        return [e for e in self.events if e.type == event_type]

    @property
    def types(self) -> list[str]:
        return [e.type for e in self.events]

    async def wait_for(self, predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        """Poll until predicate() holds or fail the test."""
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                pytest.fail(f"Timed out waiting; events so far: {self.types}")
            await asyncio.sleep(0.001)

    async def wait_for_count(self, event_type: str, count: int, timeout: float = 2.0) -> None:
        await self.wait_for(lambda: len(self.of_type(event_type)) >= count, timeout)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def transport() -> MockStreamTransport:
    return MockStreamTransport()


@pytest.fixture
def fast_config() -> StreamConfig:
    """Short timeouts and deterministic, tiny backoff delays."""
    return StreamConfig(
        streaming_timeout=0.05,
        max_restart_retries=5,
        initial_delay=0.001,
        max_delay=0.004,
        factor=2.0,
        randomization_factor=0.0,
    )
