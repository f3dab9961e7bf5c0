"""Error types for the delta streaming client.

Only setup errors are raised to callers of a long-lived stream. Everything
else is caught inside the stream task and surfaced as an ``error`` event
carrying the exception.
"""

from __future__ import annotations

from typing import Any


class DeltaStreamError(Exception):
    """Base class for all delta stream errors."""

    code = "delta_stream_error"


class SetupError(DeltaStreamError):
    """Missing credentials, cursor or a malformed configuration.

    Raised synchronously before any connection attempt; never retried.
    """

    code = "setup_error"


class TransportError(DeltaStreamError):
    """Connection refused, reset, timed out or aborted."""

    code = "transport_error"


class ProtocolError(DeltaStreamError):
    """The server answered with a non-2xx status."""

    code = "protocol_error"

    def __init__(self, status_code: int, body: Any = None):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Unexpected response status {status_code}: {self.message}")

    @property
    def message(self) -> str:
        """Best-effort human readable message from the response body."""
        if isinstance(self.body, dict):
            for key in ("message", "error", "detail"):
                value = self.body.get(key)
                if isinstance(value, str):
                    return value
        if self.body is None:
            return ""
        return str(self.body)


class DecodeError(DeltaStreamError):
    """A fragment of the byte stream can never become valid JSON."""

    code = "decode_error"

    def __init__(self, offset: int, message: str):
        self.offset = offset
        self.reason = message
        super().__init__(f"{message} (at byte {offset})")


class BackoffExhaustedError(DeltaStreamError):
    """Reconnect attempts ran out without receiving any data."""

    code = "backoff_exhausted"

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Delta stream failed to reconnect after {attempts} retries")
