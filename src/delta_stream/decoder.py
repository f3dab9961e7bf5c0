"""Incremental decoder for concatenated JSON values.

The streaming endpoint writes JSON values back to back with nothing but
optional whitespace between them, and the transport hands us the bytes in
arbitrary chunks. A value may be split anywhere: inside a string, in the
middle of a multi-byte UTF-8 sequence, inside a number.

The decoder tracks just enough structure to find where a value ends, and to
notice as soon as a fragment can no longer become valid JSON:
- a stack of expected closing brackets
- what the innermost container expects next (key, colon, value, comma)
- whether we are inside a string literal, and after a backslash
- whether a bare scalar (number, true, false, null) is pending

Once a value's extent is known, the buffered bytes go to ``json.loads``.
Scanning works on raw bytes; UTF-8 continuation bytes never collide with the
ASCII structural characters, so a split code point is simply carried over.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from typing import Any, NoReturn

from .errors import DecodeError

logger = logging.getLogger(__name__)

WHITESPACE = frozenset(b" \t\r\n")
QUOTE = ord('"')
BACKSLASH = ord("\\")
COMMA = ord(",")
COLON = ord(":")
OPEN_OBJECT = ord("{")
CLOSE_OBJECT = ord("}")
OPENERS = {OPEN_OBJECT: CLOSE_OBJECT, ord("["): ord("]")}
CLOSERS = frozenset(b"}]")
SCALAR_START = frozenset(b"-0123456789tfn")
SCALAR_END = WHITESPACE | frozenset(b'{}[]",:')

# What the innermost container accepts next
EXPECT_KEY_OR_CLOSE = 0
EXPECT_KEY = 1
EXPECT_COLON = 2
EXPECT_VALUE = 3
EXPECT_VALUE_OR_CLOSE = 4
EXPECT_COMMA_OR_CLOSE = 5

_CLOSE_ALLOWED = frozenset({EXPECT_KEY_OR_CLOSE, EXPECT_VALUE_OR_CLOSE, EXPECT_COMMA_OR_CLOSE})

_STRING_SPECIAL = re.compile(rb'["\\]')


class IncrementalJSONDecoder:
    """Turns a chunked byte stream into complete JSON values.

    Usage:
        decoder = IncrementalJSONDecoder()
        for chunk in chunks:
            for value in decoder.feed(chunk):
                handle(value)

    ``feed`` is a generator: values are produced as soon as they are complete,
    and a ``DecodeError`` is raised at the first byte where the stream stops
    being valid JSON. Values completed earlier in the same chunk have already
    been yielded by then. After an error the partial value is discarded.

    The decoder knows nothing about cursors or deltas.
    """

    def __init__(self) -> None:
        self._consumed = 0
        self.reset()

    def reset(self) -> None:
        """Drop any partial value and start counting offsets from zero."""
        self._consumed = 0
        self._clear()

    def _clear(self) -> None:
        self._buffer = bytearray()
        self._stack: list[int] = []
        self._expect = EXPECT_VALUE
        self._in_value = False
        self._in_string = False
        self._is_key = False
        self._escape = False
        self._scalar = False
        self._start = 0

    @property
    def pending(self) -> int:
        """Number of bytes buffered for an incomplete value."""
        return len(self._buffer)

    @property
    def offset(self) -> int:
        """Total bytes fed since the last reset."""
        return self._consumed

    def feed(self, data: bytes) -> Iterator[Any]:
        """Consume a chunk and yield every JSON value it completes."""
        if not data:
            return
        chunk = bytes(data)
        base = self._consumed
        self._consumed += len(chunk)

        n = len(chunk)
        i = 0
        seg_start = 0
        while i < n:
            if not self._in_value:
                byte = chunk[i]
                if byte in WHITESPACE:
                    i += 1
                    continue
                self._start = base + i
                seg_start = i
                self._in_value = True
                if byte in OPENERS:
                    self._open(byte)
                elif byte == QUOTE:
                    self._in_string = True
                elif byte in SCALAR_START:
                    self._scalar = True
                else:
                    self._fail(base + i, f"Unexpected character {chr(byte)!r}")
                i += 1
                continue

            if self._in_string:
                if self._escape:
                    self._escape = False
                    i += 1
                    continue
                match = _STRING_SPECIAL.search(chunk, i)
                if match is None:
                    i = n
                    continue
                i = match.start()
                if chunk[i] == BACKSLASH:
                    self._escape = True
                    i += 1
                    continue
                self._in_string = False
                i += 1
                if not self._stack:
                    yield self._complete(chunk[seg_start:i])
                    continue
                self._expect = EXPECT_COLON if self._is_key else EXPECT_COMMA_OR_CLOSE
                continue

            byte = chunk[i]
            if self._scalar:
                if byte not in SCALAR_END:
                    i += 1
                    continue
                # The delimiter belongs to whatever comes next
                self._scalar = False
                if not self._stack:
                    yield self._complete(chunk[seg_start:i])
                    continue
                self._expect = EXPECT_COMMA_OR_CLOSE
                continue

            if byte in WHITESPACE:
                i += 1
                continue

            expect = self._expect
            if byte in CLOSERS:
                if expect not in _CLOSE_ALLOWED or self._stack[-1] != byte:
                    self._fail(base + i, f"Unexpected closing {chr(byte)!r}")
                self._stack.pop()
                i += 1
                if not self._stack:
                    yield self._complete(chunk[seg_start:i])
                    continue
                self._expect = EXPECT_COMMA_OR_CLOSE
                continue

            if expect == EXPECT_COMMA_OR_CLOSE:
                if byte != COMMA:
                    self._fail(base + i, f"Expected ',' or closing bracket, got {chr(byte)!r}")
                self._expect = EXPECT_KEY if self._stack[-1] == CLOSE_OBJECT else EXPECT_VALUE
            elif expect == EXPECT_COLON:
                if byte != COLON:
                    self._fail(base + i, f"Expected ':', got {chr(byte)!r}")
                self._expect = EXPECT_VALUE
            elif expect in (EXPECT_KEY, EXPECT_KEY_OR_CLOSE):
                if byte != QUOTE:
                    self._fail(base + i, f"Expected object key, got {chr(byte)!r}")
                self._in_string = True
                self._is_key = True
            elif byte == QUOTE:
                self._in_string = True
                self._is_key = False
            elif byte in OPENERS:
                self._open(byte)
            elif byte in SCALAR_START:
                self._scalar = True
            else:
                self._fail(base + i, f"Unexpected character {chr(byte)!r}")
            i += 1

        if self._in_value:
            self._buffer.extend(chunk[seg_start:])

    def flush(self) -> Iterator[Any]:
        """Finish the stream: emit a pending top-level scalar.

        Raises DecodeError if the stream ended in the middle of a value.
        """
        if not self._in_value:
            return
        if self._scalar and not self._stack:
            yield self._complete(b"")
            return
        self._fail(self._start, "Stream ended inside a JSON value")

    def _open(self, byte: int) -> None:
        self._stack.append(OPENERS[byte])
        self._expect = EXPECT_KEY_OR_CLOSE if byte == OPEN_OBJECT else EXPECT_VALUE_OR_CLOSE

    def _fail(self, offset: int, message: str) -> NoReturn:
        self._clear()
        raise DecodeError(offset, message)

    def _complete(self, tail: bytes) -> Any:
        raw = bytes(self._buffer) + tail
        start = self._start
        self._clear()
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(start + e.start, "Invalid UTF-8 in JSON value") from e
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            offset = start + len(text[: e.pos].encode("utf-8"))
            raise DecodeError(offset, e.msg) from e
