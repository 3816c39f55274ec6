"""
Realtime voice message codec.

Gateway -> client (JSON text frames):
    {"type": "audio", "data": "<base64 PCM16>"}
    {"type": "transcript.user", "text": "...", "isFinal": true}
    {"type": "transcript.ai", "text": "...", "isFinal": false}
    {"type": "error", "message": "..."}
    {"type": "session.start"}
    {"type": "session.end"}

Client -> gateway:
    {"type": "audio", "data": "<base64 PCM16>"}
    {"type": "config", "voice": "...", "systemPrompt": "..."}
    {"type": "interrupt"}
    {"type": "end"}
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Union

from protocol.frames import FrameTooLarge, MalformedFrame
from spec import MAX_REALTIME_MESSAGE_BYTES


@dataclass(frozen=True)
class AudioMessage:
    pcm: bytes


@dataclass(frozen=True)
class TranscriptMessage:
    speaker: str  # "user" | "ai"
    text: str
    is_final: bool


@dataclass(frozen=True)
class RealtimeErrorMessage:
    message: str


@dataclass(frozen=True)
class SessionStartMessage:
    pass


@dataclass(frozen=True)
class SessionEndMessage:
    pass


RealtimeServerMessage = Union[
    AudioMessage,
    TranscriptMessage,
    RealtimeErrorMessage,
    SessionStartMessage,
    SessionEndMessage,
]


def decode_realtime_message(
    raw: str | bytes,
    *,
    max_bytes: int = MAX_REALTIME_MESSAGE_BYTES,
) -> RealtimeServerMessage:
    """
    Validate one gateway voice message.

    Raises:
        FrameTooLarge if raw exceeds max_bytes.
        MalformedFrame on bad JSON, unknown type or missing fields.
    """
    if len(raw) > max_bytes:
        raise FrameTooLarge(f"realtime message {len(raw)} bytes exceeds {max_bytes}")

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedFrame(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedFrame("realtime message must be an object")

    kind = data.get("type")

    if kind == "audio":
        encoded = data.get("data")
        if not isinstance(encoded, str):
            raise MalformedFrame("audio message without data")
        try:
            pcm = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedFrame(f"audio data is not base64: {e}") from e
        return AudioMessage(pcm=pcm)

    if kind in ("transcript.user", "transcript.ai"):
        text = data.get("text")
        if not isinstance(text, str):
            raise MalformedFrame(f"{kind} without text")
        return TranscriptMessage(
            speaker="user" if kind == "transcript.user" else "ai",
            text=text,
            is_final=bool(data.get("isFinal", False)),
        )

    if kind == "error":
        message = data.get("message")
        return RealtimeErrorMessage(message=message if isinstance(message, str) else "unknown error")

    if kind == "session.start":
        return SessionStartMessage()

    if kind == "session.end":
        return SessionEndMessage()

    raise MalformedFrame(f"unknown realtime message type: {kind!r}")


# -------------------------
# Client messages
# -------------------------

def encode_audio(pcm: bytes) -> str:
    return json.dumps({"type": "audio", "data": base64.b64encode(pcm).decode("ascii")})


def encode_config(*, voice: str | None = None, system_prompt: str | None = None) -> str:
    msg: dict[str, str] = {"type": "config"}
    if voice:
        msg["voice"] = voice
    if system_prompt:
        msg["systemPrompt"] = system_prompt
    return json.dumps(msg, ensure_ascii=False)


def encode_interrupt() -> str:
    return json.dumps({"type": "interrupt"})


def encode_end() -> str:
    return json.dumps({"type": "end"})
