"""Heartbeat watchdog for a single streaming connection.

The server writes a newline heartbeat every few seconds on a healthy
connection, even when there is nothing else to send. A connection that
stays open but goes quiet for longer than the timeout is considered stalled.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class HeartbeatWatchdog:
    """One-shot stall timer, reset by incoming data.

    ``arm()`` starts the timer, ``on_data()`` pushes the deadline out again,
    ``disarm()`` cancels it. When the deadline passes the ``on_stall`` callback
    runs exactly once and the watchdog disarms itself; it must be armed again
    before it can fire again.

    Must be used from within a running event loop.
    """

    def __init__(self, on_stall: Callable[[], None]):
        self._on_stall = on_stall
        self._timeout: float | None = None
        self._handle: asyncio.TimerHandle | None = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    @property
    def deadline(self) -> float | None:
        """Loop time at which the watchdog fires, or None when disarmed."""
        return self._handle.when() if self._handle else None

    def arm(self, timeout: float) -> None:
        """Start (or restart) the timer with a new timeout in seconds."""
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.disarm()
        self._timeout = timeout
        self._schedule()

    def on_data(self) -> None:
        """Reset the deadline; ignored while disarmed."""
        if self._handle is None:
            return
        self._handle.cancel()
        self._schedule()

    def disarm(self) -> None:
        """Cancel the timer. Safe to call repeatedly."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _schedule(self) -> None:
        assert self._timeout is not None
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._timeout, self._fire)

    def _fire(self) -> None:
        self._handle = None
        logger.debug(f"No data received for {self._timeout}s")
        self._on_stall()
