"""Configuration objects for the delta streaming client.

All settings are passed explicitly to the objects that use them. Nothing is
kept in process-wide state, so independent streams (one per account, say)
never interfere with each other.

Environment variable mapping (``ClientConfig.from_env``):
    DELTA_STREAM_API_SERVER   -> api_server
    DELTA_STREAM_ACCESS_TOKEN -> access_token
    DELTA_STREAM_TIMEOUT      -> timeout
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import SetupError

DEFAULT_API_SERVER = "https://api.nylas.com"
STREAMING_PATH = "/delta/streaming"
LATEST_CURSOR_PATH = "/delta/latest_cursor"


@dataclass
class ClientConfig:
    """Connection settings shared by the one-shot and streaming calls."""

    api_server: str = DEFAULT_API_SERVER
    access_token: str | None = None
    timeout: float = 30.0  # connect/write timeout; streaming reads never time out
    user_agent: str = "delta-stream"

    def __post_init__(self) -> None:
        if "://" not in self.api_server:
            raise SetupError("Please specify a fully qualified URL for the API Server.")
        self.api_server = self.api_server.rstrip("/")

    def require_token(self) -> str:
        """Return the access token or raise SetupError."""
        if not self.access_token:
            raise SetupError("This function requires an access token")
        return self.access_token

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ClientConfig:
        """Build a config from DELTA_STREAM_* environment variables."""
        env = os.environ if environ is None else environ
        kwargs: dict[str, Any] = {}
        if api_server := env.get("DELTA_STREAM_API_SERVER"):
            kwargs["api_server"] = api_server
        if token := env.get("DELTA_STREAM_ACCESS_TOKEN"):
            kwargs["access_token"] = token
        if timeout := env.get("DELTA_STREAM_TIMEOUT"):
            try:
                kwargs["timeout"] = float(timeout)
            except ValueError as e:
                raise SetupError(f"Invalid DELTA_STREAM_TIMEOUT: {timeout!r}") from e
        return cls(**kwargs)


@dataclass
class StreamConfig:
    """Streaming behaviour: stall detection and reconnect policy."""

    streaming_path: str = STREAMING_PATH
    latest_cursor_path: str = LATEST_CURSOR_PATH

    # Heartbeat watchdog; the server sends a newline well within this window
    streaming_timeout: float = 15.0

    # Reconnect backoff
    max_restart_retries: int = 5
    initial_delay: float = 0.25
    max_delay: float = 30.0
    factor: float = 4.0
    randomization_factor: float = 0.5

    def __post_init__(self) -> None:
        if self.streaming_timeout <= 0:
            raise ValueError("streaming_timeout must be positive")
        if self.max_restart_retries < 0:
            raise ValueError("max_restart_retries must be >= 0")
        if self.initial_delay <= 0 or self.max_delay <= 0:
            raise ValueError("backoff delays must be positive")
        if self.initial_delay > self.max_delay:
            raise ValueError("initial_delay must not exceed max_delay")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if not 0 <= self.randomization_factor <= 1:
            raise ValueError("randomization_factor must be between 0 and 1")


def _normalize_types(types: Iterable[str] | str | None) -> tuple[str, ...]:
    if not types:
        return ()
    if isinstance(types, str):
        types = types.split(",")
    return tuple(t.strip() for t in types if t and t.strip())


@dataclass(frozen=True)
class StreamParams:
    """Query filters for one stream; immutable for the life of the stream.

    ``include_types`` and ``exclude_types`` are meant to be used one at a time,
    but both are passed through if given.
    """

    include_types: tuple[str, ...] = ()
    exclude_types: tuple[str, ...] = ()
    expanded: bool = False
    extra: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "include_types", _normalize_types(self.include_types))
        object.__setattr__(self, "exclude_types", _normalize_types(self.exclude_types))
        object.__setattr__(self, "extra", dict(self.extra))

    def to_query(self, cursor: str | None) -> dict[str, Any]:
        """Build the query string parameters for a streaming request."""
        query: dict[str, Any] = {}
        for key, value in self.extra.items():
            if value is not None:
                query[key] = value
        if cursor is not None:
            query["cursor"] = cursor
        if self.exclude_types:
            query["exclude_types"] = ",".join(self.exclude_types)
        if self.include_types:
            query["include_types"] = ",".join(self.include_types)
        if self.expanded:
            query["expanded"] = "true"
        return query
