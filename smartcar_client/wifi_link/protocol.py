from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

HEARTBEAT = "{Heartbeat}"
HEARTBEAT_BYTES = HEARTBEAT.encode("ascii")
ACK_LITERAL = "{ok}"
ERROR_MARKER = "error:"

# Longest brace span searched for a closing brace before the opening one is
# given up as junk.
MAX_SPAN_LENGTH = 4096
MAX_ERROR_TEXT = 512

_SEQUENCED_ACK_RE = re.compile(r"^\{([0-9]+)_ok\}$")
_SENSOR_VALUE_RE = re.compile(r"^\{([0-9]+)_([0-9]+)\}$")


class TokenKind(Enum):
    HEARTBEAT = "heartbeat"
    ERROR_TEXT = "error_text"
    ACK = "ack"
    SENSOR_VALUE = "sensor_value"
    STRUCTURED = "structured"


@dataclass(frozen=True, slots=True)
class Token:
    kind: TokenKind
    raw: str
    sequence: Optional[int] = None
    value: Optional[int] = None
    fields: Optional[Dict[str, Any]] = None
    text: Optional[str] = None


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name}")


def _finite_float(literal: str) -> float:
    value = float(literal)
    if not math.isfinite(value):
        raise ValueError(f"non-finite number {literal}")
    return value


def _as_utf8(span: str) -> str:
    # the framer hands over one character per byte
    try:
        raw = span.encode("latin-1")
    except UnicodeEncodeError:
        return span
    return raw.decode("utf-8", "replace")


def classify_span(span: str) -> Optional[Token]:
    """Classify one complete ``{...}`` span, or return None if it is malformed."""
    if span == HEARTBEAT:
        return Token(TokenKind.HEARTBEAT, span)
    if span == ACK_LITERAL:
        return Token(TokenKind.ACK, span)

    match = _SEQUENCED_ACK_RE.match(span)
    if match:
        return Token(TokenKind.ACK, span, sequence=int(match.group(1)))

    match = _SENSOR_VALUE_RE.match(span)
    if match:
        return Token(
            TokenKind.SENSOR_VALUE,
            span,
            sequence=int(match.group(1)),
            value=int(match.group(2)),
        )

    span = _as_utf8(span)
    try:
        fields = json.loads(span, parse_constant=_reject_constant, parse_float=_finite_float)
    except ValueError:
        return None
    if not isinstance(fields, dict):
        return None
    return Token(TokenKind.STRUCTURED, span, fields=fields)


class StreamFramer:
    """Incremental tokenizer for the car's undelimited text stream.

    Tokens are only taken from the head of the buffer, so the output does not
    depend on how the stream was split into reads. Incomplete spans stay
    buffered until more bytes arrive.
    """

    __slots__ = ("_buffer", "malformed_spans", "dropped_bytes")

    def __init__(self) -> None:
        self._buffer = bytearray()
        self.malformed_spans = 0
        self.dropped_bytes = 0

    def reset(self) -> None:
        self._buffer.clear()

    @property
    def pending(self) -> bytes:
        return bytes(self._buffer)

    def feed(self, data: bytes) -> List[Token]:
        if data:
            self._buffer.extend(data)
        return self._drain(final=False)

    def flush(self) -> List[Token]:
        """Drain at end of stream, emitting any unterminated error text."""
        tokens = self._drain(final=True)
        if self._buffer:
            self.dropped_bytes += len(self._buffer)
            self._buffer.clear()
        return tokens

    def _drain(self, final: bool) -> List[Token]:
        tokens: List[Token] = []
        # latin-1 keeps one character per byte so offsets map back to the buffer
        text = self._buffer.decode("latin-1")
        size = len(text)
        pos = 0

        while pos < size:
            ch = text[pos]

            if ch.isspace():
                pos += 1
                continue

            if ch == "{":
                limit = min(size, pos + MAX_SPAN_LENGTH)
                close = text.find("}", pos + 1, limit)
                inner = text.find("{", pos + 1, close if close >= 0 else limit)
                if inner >= 0:
                    self._drop(text[pos:inner])
                    pos = inner
                    continue
                if close < 0:
                    if final or size - pos >= MAX_SPAN_LENGTH:
                        self._drop(ch)
                        pos += 1
                        continue
                    break

                span = text[pos:close + 1]
                token = classify_span(span)
                if token is None:
                    self.malformed_spans += 1
                    logger.debug("Dropping malformed span: %r", span)
                else:
                    tokens.append(token)
                pos = close + 1
                continue

            if text.startswith(ERROR_MARKER, pos):
                end = self._error_end(text, pos, final)
                if end < 0:
                    break
                raw = text[pos:end]
                tokens.append(
                    Token(TokenKind.ERROR_TEXT, raw.strip(), text=raw[len(ERROR_MARKER):].strip())
                )
                pos = end
                continue

            end = self._junk_end(text, pos, final)
            if end == pos:
                break
            self._drop(text[pos:end])
            pos = end

        if pos:
            del self._buffer[:pos]
        return tokens

    def _drop(self, junk: str) -> None:
        self.dropped_bytes += len(junk)
        logger.debug("Dropping unframed bytes: %r", junk)

    @staticmethod
    def _error_end(text: str, pos: int, final: bool) -> int:
        limit = min(len(text), pos + MAX_ERROR_TEXT)
        start = pos + len(ERROR_MARKER)
        candidates = [i for i in (text.find("\n", start, limit), text.find("{", start, limit)) if i >= 0]
        if candidates:
            return min(candidates)
        if final or len(text) - pos >= MAX_ERROR_TEXT:
            return limit
        return -1

    @staticmethod
    def _junk_end(text: str, pos: int, final: bool) -> int:
        i = pos
        size = len(text)
        while i < size:
            ch = text[i]
            if ch == "{" or ch.isspace() or text.startswith(ERROR_MARKER, i):
                return i
            if not final and ch == ERROR_MARKER[0] and ERROR_MARKER.startswith(text[i:]):
                return i
            i += 1
        return size


def frame_stream(chunks: Iterable[bytes]) -> List[Token]:
    framer = StreamFramer()
    out: List[Token] = []
    for chunk in chunks:
        out.extend(framer.feed(chunk))
    out.extend(framer.flush())
    return out
