# pylint: disable=missing-module-docstring,missing-function-docstring

import json

import pytest

from protocol.frames import (
    ContentChunk,
    DoneFrame,
    ErrorFrame,
    FrameTooLarge,
    MalformedFrame,
    SSEDecoder,
    ToolEndChunk,
    ToolStartChunk,
    Usage,
    UsageFrame,
    decode_stream_frame,
)


def sse(payload: object) -> bytes:
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {body}\n\n".encode("utf-8")


def delta(text: str) -> dict:
    return {"choices": [{"delta": {"content": text}}]}


# ---------------------------------------------------------------------
# SSEDecoder
# ---------------------------------------------------------------------

def test_event_split_across_feeds_is_reassembled():
    dec = SSEDecoder()
    raw = sse(delta("Hello"))

    assert dec.feed(raw[:7]) == []
    assert dec.feed(raw[7:]) == [json.dumps(delta("Hello"))]
    assert dec.pending_bytes == 0


def test_multiple_events_in_one_feed():
    dec = SSEDecoder()
    out = dec.feed(sse(delta("a")) + sse(delta("b")) + sse("[DONE]"))
    assert len(out) == 3
    assert out[-1] == "[DONE]"


def test_crlf_and_comments_are_handled():
    dec = SSEDecoder()
    out = dec.feed(b": keep-alive\r\n\r\ndata: [DONE]\r\n\r\n")
    assert out == ["[DONE]"]


def test_crlf_split_across_feeds_keeps_events_apart():
    dec = SSEDecoder()
    first = json.dumps(delta("a"))
    second = json.dumps(delta("b"))

    assert dec.feed(f"data: {first}\r\n\r".encode()) == []
    assert dec.feed(f"\ndata: {second}\r\n\r\n".encode()) == [first, second]
    assert dec.pending_bytes == 0


def test_multiline_data_is_joined():
    dec = SSEDecoder()
    out = dec.feed(b"data: line1\ndata: line2\n\n")
    assert out == ["line1\nline2"]


def test_oversized_window_is_dropped_and_decoder_recovers():
    dec = SSEDecoder(max_buffer_bytes=32)

    with pytest.raises(FrameTooLarge):
        dec.feed(b"data: " + b"x" * 64)

    assert dec.pending_bytes == 0
    assert dec.feed(sse("[DONE]")) == ["[DONE]"]


def test_flush_returns_trailing_event():
    dec = SSEDecoder()
    assert dec.feed(b"data: [DONE]") == []
    assert dec.flush() == ["[DONE]"]
    assert dec.flush() == []


def test_invalid_bound_rejected():
    with pytest.raises(ValueError):
        SSEDecoder(max_buffer_bytes=0)


# ---------------------------------------------------------------------
# decode_stream_frame: direct mode (OpenAI chunks)
# ---------------------------------------------------------------------

def test_done_marker():
    assert decode_stream_frame("[DONE]") == DoneFrame()


def test_content_delta():
    assert decode_stream_frame(json.dumps(delta("Hi"))) == ContentChunk(text="Hi")


def test_role_only_delta_is_empty_metadata():
    frame = decode_stream_frame(json.dumps({"choices": [{"delta": {"role": "assistant"}}]}))
    assert frame == UsageFrame(usage=None, model=None)


def test_usage_chunk_carries_model():
    frame = decode_stream_frame(json.dumps({
        "choices": [],
        "model": "m-1",
        "usage": {"prompt_tokens": 10, "completion_tokens": 5},
    }))
    assert isinstance(frame, UsageFrame)
    assert frame.model == "m-1"
    assert frame.usage == Usage(prompt_tokens=10, completion_tokens=5)
    assert frame.usage.total_tokens == 15


def test_in_band_error_with_status():
    frame = decode_stream_frame(json.dumps({"error": {"message": "rate limited", "code": 429}}))
    assert frame == ErrorFrame(message="rate limited", status=429)


# ---------------------------------------------------------------------
# decode_stream_frame: talk mode events
# ---------------------------------------------------------------------

def test_talk_events():
    assert decode_stream_frame(json.dumps({"type": "content", "text": "x"})) == ContentChunk(text="x")

    start = decode_stream_frame(json.dumps({
        "type": "tool_start", "name": "search", "arguments": {"q": "cats"},
    }))
    assert isinstance(start, ToolStartChunk)
    assert start.name == "search"
    assert json.loads(start.arguments) == {"q": "cats"}

    end = decode_stream_frame(json.dumps({
        "type": "tool_end", "name": "search", "success": True, "content": "ok", "durationMs": 12,
    }))
    assert end == ToolEndChunk(name="search", success=True, content="ok", duration_ms=12)

    assert decode_stream_frame(json.dumps({"type": "done"})) == DoneFrame()


@pytest.mark.parametrize("payload", [
    "{not json",
    "[1, 2]",
    json.dumps({"type": "mystery"}),
    json.dumps({"type": "content"}),
    json.dumps({"id": "x"}),
    '{"type": "tool_end", "name": "search", "durationMs": 1e999}',
    '{"choices": [], "usage": {"prompt_tokens": Infinity}}',
])
def test_malformed_payloads(payload: str):
    with pytest.raises(MalformedFrame):
        decode_stream_frame(payload)


def test_usage_adds():
    total = Usage(1, 2) + Usage(3, 4)
    assert total == Usage(prompt_tokens=4, completion_tokens=6)


def test_out_of_range_error_status_is_ignored():
    frame = decode_stream_frame('{"error": "boom", "status": 1e999}')
    assert frame == ErrorFrame(message="boom", status=None)
