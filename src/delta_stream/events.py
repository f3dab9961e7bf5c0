"""Event definitions for the delta stream.

A stream reports everything to its caller through four event kinds:
- response: the connection was established (carries the raw response)
- delta: one decoded change record, in arrival order
- info: non-fatal status changes, e.g. reconnect attempts
- error: recoverable failures, plus one terminal error (``fatal=True``)

Example (delta):
    {
        "id": "evt_1f0c2a9b3d4e",
        "type": "delta",
        "cursor": "def",
        "data": {"cursor": "def", "object": "thread", "type": "update", ...}
    }
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PrivateAttr, ValidationError

logger = logging.getLogger(__name__)


class StreamEventType(str, Enum):
    """All event kinds a stream emits."""

    RESPONSE = "response"
    DELTA = "delta"
    INFO = "info"
    ERROR = "error"


class Delta(BaseModel):
    """One change record from the streaming endpoint.

    Only the envelope is modelled; ``attributes`` is passed through untouched
    and unknown top-level fields are kept.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    cursor: str | None = None
    object: str | None = None
    type: str | None = Field(default=None, validation_alias=AliasChoices("type", "event"))
    id: str | None = None
    attributes: Any = None

    # The decoded value this delta came from, when it came off the stream
    _raw: Any = PrivateAttr(default=None)
    _received: bool = PrivateAttr(default=False)

    @classmethod
    def from_value(cls, value: Any) -> Delta:
        """Build a Delta from any decoded JSON value.

        The cursor is read from the raw object, so an envelope field of the
        wrong shape never loses it. Non-object values and malformed envelopes
        end up in ``attributes``.
        """
        delta: Delta | None = None
        if isinstance(value, dict):
            try:
                delta = cls.model_validate(value)
            except ValidationError as e:
                logger.warning(f"Malformed delta envelope: {e.error_count()} errors")
        if delta is None:
            delta = cls(cursor=_raw_cursor(value), attributes=value)
        delta._raw = value
        delta._received = True
        return delta

    def resume_cursor(self) -> str | None:
        """The cursor to resume from after this delta, if it has one."""
        return self.cursor or None

    def to_data(self) -> dict[str, Any]:
        """The delta as it was received, for event payloads."""
        if isinstance(self._raw, dict):
            return dict(self._raw)
        if self._received:
            return {"attributes": self._raw}
        return self.model_dump(by_alias=True, exclude_none=True)


def _raw_cursor(value: Any) -> str | None:
    if not isinstance(value, dict):
        return None
    cursor = value.get("cursor")
    if isinstance(cursor, bool):
        return None
    if isinstance(cursor, (int, float)):
        return str(cursor)
    if isinstance(cursor, str) and cursor:
        return cursor
    return None


class StreamEvent(BaseModel):
    """An event from a delta stream to its listeners."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:12]}")
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    # Stream cursor after this event was processed
    cursor: str | None = None
    fatal: bool = False

    # In-process only; never serialized
    delta: Delta | None = Field(default=None, exclude=True)
    response: Any = Field(default=None, exclude=True)
    exception: BaseException | None = Field(default=None, exclude=True)

    def is_error(self) -> bool:
        return self.type == StreamEventType.ERROR.value

    def is_fatal(self) -> bool:
        return self.fatal

    @classmethod
    def create(
        cls,
        event_type: str | StreamEventType,
        data: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> StreamEvent:
        """Factory method for creating events."""
        return cls(
            type=event_type.value if isinstance(event_type, StreamEventType) else event_type,
            data=data or {},
            **kwargs,
        )

    # =========================================================================
    # Factory methods for the four event kinds
    # =========================================================================

    @classmethod
    def response_established(cls, response: Any, cursor: str | None = None) -> StreamEvent:
        """Create a response event for an established connection."""
        data: dict[str, Any] = {"status_code": getattr(response, "status_code", None)}
        headers = getattr(response, "headers", None)
        if headers is not None:
            data["headers"] = dict(headers)
        return cls.create(StreamEventType.RESPONSE, data, response=response, cursor=cursor)

    @classmethod
    def delta_received(cls, delta: Delta, cursor: str | None = None) -> StreamEvent:
        """Create a delta event."""
        return cls.create(
            StreamEventType.DELTA,
            delta.to_data(),
            delta=delta,
            cursor=cursor,
        )

    @classmethod
    def info(cls, message: str, cursor: str | None = None, **data: Any) -> StreamEvent:
        """Create an informational status event."""
        return cls.create(StreamEventType.INFO, {"message": message, **data}, cursor=cursor)

    @classmethod
    def error(
        cls,
        error: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        fatal: bool = False,
        exception: BaseException | None = None,
        cursor: str | None = None,
    ) -> StreamEvent:
        """Create an error event."""
        data: dict[str, Any] = {"error": error}
        if code:
            data["code"] = code
        if details:
            data["details"] = details
        return cls.create(
            StreamEventType.ERROR,
            data,
            fatal=fatal,
            exception=exception,
            cursor=cursor,
        )
