"""
Chat stream framing helpers.

Wire format (server-sent events over a chunked HTTP response):

    data: {"choices":[{"delta":{"content":"Hel"}}]}\\n\\n
    data: {"type":"tool_start","name":"search","arguments":"{...}"}\\n\\n
    data: [DONE]\\n\\n

Two payload shapes are accepted:
- OpenAI chat-completion deltas (direct mode)
- Gateway talk events with a "type" tag (talk mode)

Usage example:

    decoder = SSEDecoder()
    for payload in decoder.feed(raw_bytes):
        frame = decode_stream_frame(payload)
        if isinstance(frame, ContentChunk):
            ...

Everything here is pure; callers decide what to log and drop.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from spec import MAX_STREAM_BUFFER_BYTES


# -------------------------
# Exceptions
# -------------------------

class FrameError(Exception):
    """Base class for stream framing errors."""


class FrameTooLarge(FrameError):
    """
    Raised when buffered stream data exceeds the accumulation bound.

    The pending window has already been discarded when this is raised;
    the decoder remains usable for subsequent bytes.
    """


class MalformedFrame(FrameError):
    """
    Raised when an event payload is not valid JSON or has an unknown shape.

    The frame must be dropped; it never terminates a turn on its own.
    """


# -------------------------
# Frame types
# -------------------------

class ChunkType(str, Enum):
    """Tag of a stream chunk delivered to the turn orchestrator."""
    CONTENT = "content"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"


@dataclass(frozen=True)
class Usage:
    """Token usage; addable across the original and retried calls."""
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @staticmethod
    def from_wire(data: Any) -> Usage | None:
        if not isinstance(data, dict):
            return None
        return Usage(
            prompt_tokens=_as_int(data.get("prompt_tokens", data.get("promptTokens"))),
            completion_tokens=_as_int(
                data.get("completion_tokens", data.get("completionTokens"))
            ),
        )


@dataclass(frozen=True)
class ContentChunk:
    text: str
    chunk_type: ChunkType = ChunkType.CONTENT


@dataclass(frozen=True)
class ToolStartChunk:
    name: str
    arguments: str
    chunk_type: ChunkType = ChunkType.TOOL_START


@dataclass(frozen=True)
class ToolEndChunk:
    name: str
    success: bool
    content: str
    duration_ms: int
    chunk_type: ChunkType = ChunkType.TOOL_END


StreamChunk = Union[ContentChunk, ToolStartChunk, ToolEndChunk]


@dataclass(frozen=True)
class UsageFrame:
    """Usage and/or model reported by the gateway (usually near the end)."""
    usage: Usage | None
    model: str | None


@dataclass(frozen=True)
class DoneFrame:
    """End-of-stream marker."""


@dataclass(frozen=True)
class ErrorFrame:
    """Error reported in-band by the gateway."""
    message: str
    status: int | None = None


StreamFrame = Union[ContentChunk, ToolStartChunk, ToolEndChunk, UsageFrame, DoneFrame, ErrorFrame]


# -------------------------
# SSE decoding
# -------------------------

class SSEDecoder:
    """
    Incremental server-sent-events splitter.

    feed() returns the joined `data:` payload of every complete event
    found so far. Comment lines (":") and non-data fields are ignored.
    """

    def __init__(self, *, max_buffer_bytes: int = MAX_STREAM_BUFFER_BYTES) -> None:
        if max_buffer_bytes <= 0:
            raise ValueError("max_buffer_bytes must be > 0")
        self._max = max_buffer_bytes
        self._buffer = bytearray()
        self._pending_cr = False

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> list[str]:
        """
        Append raw bytes and return complete event payloads.

        Raises:
            FrameTooLarge if the incomplete window exceeds the bound.
        """
        # A CRLF may straddle two reads: hold a trailing CR until the next feed
        if self._pending_cr:
            data = b"\r" + data
            self._pending_cr = False
        if data.endswith(b"\r"):
            data = data[:-1]
            self._pending_cr = True
        self._buffer.extend(data.replace(b"\r\n", b"\n"))

        payloads: list[str] = []
        while True:
            end = self._buffer.find(b"\n\n")
            if end < 0:
                break
            block = bytes(self._buffer[:end])
            del self._buffer[: end + 2]
            payload = _data_payload(block)
            if payload is not None:
                payloads.append(payload)

        if len(self._buffer) > self._max:
            size = len(self._buffer)
            self._buffer.clear()
            self._pending_cr = False
            raise FrameTooLarge(
                f"pending stream data {size} bytes exceeds {self._max}"
            )

        return payloads

    def flush(self) -> list[str]:
        """Return the trailing event when the stream ends without a blank line."""
        self._pending_cr = False
        if not self._buffer:
            return []
        block = bytes(self._buffer)
        self._buffer.clear()
        payload = _data_payload(block)
        return [payload] if payload is not None else []


def _data_payload(block: bytes) -> str | None:
    lines: list[str] = []
    for raw in block.decode("utf-8", errors="replace").split("\n"):
        if raw.startswith("data:"):
            value = raw[5:]
            lines.append(value[1:] if value.startswith(" ") else value)
    if not lines:
        return None
    return "\n".join(lines)


# -------------------------
# Payload decoding
# -------------------------

def decode_stream_frame(payload: str) -> StreamFrame:
    """
    Parse one event payload into a typed frame.

    Raises:
        MalformedFrame on invalid JSON or an unrecognised shape.
    """
    text = payload.strip()
    if text == "[DONE]":
        return DoneFrame()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedFrame(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedFrame(f"expected object, got {type(data).__name__}")

    if "type" in data:
        return _decode_talk_event(data)
    return _decode_openai_chunk(data)


def _decode_talk_event(data: dict[str, Any]) -> StreamFrame:
    kind = data.get("type")

    if kind == "content":
        text = data.get("text", data.get("content"))
        if not isinstance(text, str):
            raise MalformedFrame("content event without text")
        return ContentChunk(text=text)

    if kind == "tool_start":
        name = data.get("name")
        if not isinstance(name, str):
            raise MalformedFrame("tool_start without name")
        arguments = data.get("arguments", "")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments, ensure_ascii=False)
        return ToolStartChunk(name=name, arguments=arguments)

    if kind == "tool_end":
        name = data.get("name")
        if not isinstance(name, str):
            raise MalformedFrame("tool_end without name")
        content = data.get("content", "")
        return ToolEndChunk(
            name=name,
            success=bool(data.get("success", False)),
            content=content if isinstance(content, str) else json.dumps(content),
            duration_ms=_as_int(data.get("durationMs")),
        )

    if kind == "usage":
        return UsageFrame(usage=Usage.from_wire(data.get("usage")), model=_as_str(data.get("model")))

    if kind == "done":
        return DoneFrame()

    if kind == "error":
        return ErrorFrame(
            message=_error_message(data.get("error", data.get("message"))),
            status=_status(data),
        )

    raise MalformedFrame(f"unknown event type: {kind!r}")


def _decode_openai_chunk(data: dict[str, Any]) -> StreamFrame:
    if "error" in data:
        return ErrorFrame(message=_error_message(data["error"]), status=_status(data))

    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        delta = first.get("delta") if isinstance(first, dict) else None
        if isinstance(delta, dict):
            content = delta.get("content")
            if isinstance(content, str) and content:
                return ContentChunk(text=content)

    if "usage" in data or "model" in data:
        return UsageFrame(usage=Usage.from_wire(data.get("usage")), model=_as_str(data.get("model")))

    if isinstance(choices, list):
        # Role-only or finish_reason-only delta
        return UsageFrame(usage=None, model=None)

    raise MalformedFrame("chunk has neither choices, usage nor error")


# -------------------------
# Low-level helpers
# -------------------------

def _as_int(value: Any) -> int:
    """
    Lenient integer field; absent or non-numeric reads as 0.

    Raises:
        MalformedFrame on a non-finite number (json accepts 1e999 and Infinity).
    """
    if isinstance(value, float) and not math.isfinite(value):
        raise MalformedFrame(f"non-finite number: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _status(data: dict[str, Any]) -> int | None:
    err = data.get("error")
    raw = data.get("status")
    if raw is None and isinstance(err, dict):
        raw = err.get("status", err.get("code"))
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError, OverflowError):
        return None


def _error_message(err: Any) -> str:
    if isinstance(err, str):
        return err
    if isinstance(err, dict):
        msg = err.get("message")
        if isinstance(msg, str):
            return msg
    return json.dumps(err, ensure_ascii=False, default=str)
