# pylint: disable=missing-module-docstring,missing-function-docstring,protected-access

import asyncio
import base64
import json
from typing import Any

import pytest

from adapters.voice.realtime import (
    RealtimeVoiceConfig,
    RealtimeVoiceTransport,
    VoiceState,
    build_realtime_url,
)
from context.talks import ActiveTalk, TalkStore


# ---------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------

class FakeWebSocket:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.incoming: asyncio.Queue[str | None] = asyncio.Queue()
        self.closed = False

    def push(self, msg: dict[str, Any]) -> None:
        self.incoming.put_nowait(json.dumps(msg))

    async def send(self, payload: str) -> None:
        self.sent.append(json.loads(payload))

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(None)

    def sent_types(self) -> list[str]:
        return [m["type"] for m in self.sent]


class FakeSink:
    def __init__(self, *, blocking: bool = False) -> None:
        self.played: list[bytes] = []
        self.stops = 0
        self.gate = asyncio.Event() if blocking else None

    async def play(self, pcm: bytes) -> None:
        self.played.append(pcm)
        if self.gate is not None:
            await self.gate.wait()

    def stop(self) -> None:
        self.stops += 1


class Harness:
    def __init__(self, *, blocking_sink: bool = False, start: bool = True) -> None:
        self.store = TalkStore()
        self.active = ActiveTalk()
        self.talk = self.store.create_talk()
        self.active.set(self.talk.id)
        self.ws = FakeWebSocket()
        self.sink = FakeSink(blocking=blocking_sink)
        self.connect_calls: list[tuple[str, dict[str, Any]]] = []
        self.states: list[VoiceState] = []
        self.errors: list[str] = []
        if start:
            self.ws.push({"type": "session.start"})

        async def fake_connect(url: str, **kwargs: Any) -> FakeWebSocket:
            self.connect_calls.append((url, kwargs))
            return self.ws

        self.voice = RealtimeVoiceTransport(
            gateway_url="http://gw:1",
            token="tok",
            store=self.store,
            active=self.active,
            sink=self.sink,
            connect_fn=fake_connect,
            on_error=self.errors.append,
        )
        self.voice.add_state_listener(self.states.append)

    def messages(self, talk_id: str | None = None) -> list[tuple[str, str]]:
        session = self.store.get_session(talk_id or self.talk.id)
        return [(m.role, m.content) for m in session.messages]


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def audio_msg(pcm: bytes = b"\x01\x00" * 8) -> dict[str, Any]:
    return {"type": "audio", "data": base64.b64encode(pcm).decode()}


# ---------------------------------------------------------------------
# Connect
# ---------------------------------------------------------------------

def test_realtime_url():
    assert build_realtime_url("http://gw:1", "openai") == "ws://gw:1/api/voice/realtime?provider=openai"
    assert build_realtime_url("https://gw.example.com/base/", "gemini") == (
        "wss://gw.example.com/base/api/voice/realtime?provider=gemini"
    )


def test_connect_sends_config_and_listens():
    async def scenario() -> None:
        h = Harness()
        ok = await h.voice.connect(RealtimeVoiceConfig(provider="openai", voice="alloy", system_prompt="hi"))

        assert ok
        assert h.voice.state is VoiceState.LISTENING
        assert h.voice.talk_id == h.talk.id
        assert h.ws.sent[0] == {"type": "config", "voice": "alloy", "systemPrompt": "hi"}

        url, kwargs = h.connect_calls[0]
        assert url == "ws://gw:1/api/voice/realtime?provider=openai"
        assert kwargs["additional_headers"] == {"Authorization": "Bearer tok"}

        await h.voice.disconnect()

    asyncio.run(scenario())


def test_unknown_provider_rejected():
    async def scenario() -> None:
        h = Harness()
        with pytest.raises(ValueError):
            await h.voice.connect(RealtimeVoiceConfig(provider="nope"))
        assert h.voice.state is VoiceState.DISCONNECTED

    asyncio.run(scenario())


def test_connect_failure_returns_to_disconnected():
    async def scenario() -> None:
        h = Harness()

        async def refuse(url: str, **kwargs: Any) -> Any:
            raise OSError("connection refused")

        h.voice._connect_fn = refuse  # pylint: disable=protected-access
        ok = await h.voice.connect(RealtimeVoiceConfig(provider="openai"))

        assert not ok
        assert h.voice.state is VoiceState.DISCONNECTED
        assert h.states == [VoiceState.CONNECTING, VoiceState.DISCONNECTED]

    asyncio.run(scenario())


def test_connect_times_out_without_session_start():
    async def scenario() -> None:
        h = Harness(start=False)
        ok = await h.voice.connect(RealtimeVoiceConfig(provider="openai"), timeout_s=0.05)

        assert not ok
        assert h.voice.state is VoiceState.DISCONNECTED
        assert h.ws.closed

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Playback / barge-in
# ---------------------------------------------------------------------

def test_ai_audio_plays_and_returns_to_listening():
    async def scenario() -> None:
        h = Harness()
        await h.voice.connect(RealtimeVoiceConfig(provider="openai"))

        h.ws.push(audio_msg(b"\x01\x00"))
        await settle()

        assert h.sink.played == [b"\x01\x00"]
        assert VoiceState.AI_SPEAKING in h.states
        assert h.voice.state is VoiceState.LISTENING

        await h.voice.disconnect()

    asyncio.run(scenario())


def test_interrupt_stops_playback_synchronously_and_discards_in_flight_audio():
    async def scenario() -> None:
        h = Harness(blocking_sink=True)
        await h.voice.connect(RealtimeVoiceConfig(provider="openai"))

        h.ws.push(audio_msg())
        await settle()
        assert h.voice.state is VoiceState.AI_SPEAKING

        h.voice.interrupt()
        # No await between the call and these checks
        assert h.voice.state is VoiceState.LISTENING
        assert h.sink.stops == 1

        await settle()
        assert "interrupt" in h.ws.sent_types()

        # Audio and transcripts from the interrupted response are dropped
        played_before = len(h.sink.played)
        h.ws.push(audio_msg())
        h.ws.push({"type": "transcript.ai", "text": "stale reply", "isFinal": True})
        await settle()
        assert len(h.sink.played) == played_before
        assert h.voice.state is VoiceState.LISTENING
        assert h.messages() == []

        # A new user utterance re-opens the AI channel
        h.ws.push({"type": "transcript.user", "text": "actually", "isFinal": True})
        h.ws.push({"type": "transcript.ai", "text": "sure", "isFinal": True})
        await settle()
        assert h.messages() == [("user", "actually"), ("assistant", "sure")]

        await h.voice.disconnect()

    asyncio.run(scenario())


def test_mic_audio_is_held_while_ai_speaks_then_flushed_in_order():
    async def scenario() -> None:
        h = Harness(blocking_sink=True)
        await h.voice.connect(RealtimeVoiceConfig(provider="openai"))

        h.ws.push(audio_msg())
        await settle()
        assert h.voice.state is VoiceState.AI_SPEAKING

        assert await h.voice.send_audio(b"\x01\x00")
        assert await h.voice.send_audio(b"\x02\x00")
        assert h.ws.sent_types() == ["config"]

        h.ws.push({"type": "transcript.ai", "text": "done talking", "isFinal": True})
        await settle()
        assert h.voice.state is VoiceState.LISTENING

        assert await h.voice.send_audio(b"\x03\x00")
        await settle()

        audio = [m["data"] for m in h.ws.sent if m["type"] == "audio"]
        assert audio == ["AQA=", "AgA=", "AwA="]

        await h.voice.disconnect()

    asyncio.run(scenario())


def test_send_audio_rejected_when_disconnected():
    async def scenario() -> None:
        h = Harness()
        assert not await h.voice.send_audio(b"\x01\x00")
        assert h.voice.input_level > 0.0

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Transcripts / teardown
# ---------------------------------------------------------------------

def test_transcripts_go_to_talk_captured_at_connect():
    async def scenario() -> None:
        h = Harness()
        seen: list[tuple[str, str, bool]] = []
        h.voice._on_transcript = lambda *args: seen.append(args)  # pylint: disable=protected-access
        await h.voice.connect(RealtimeVoiceConfig(provider="openai"))

        other = h.store.create_talk()
        h.active.set(other.id)

        h.ws.push({"type": "transcript.user", "text": "hello", "isFinal": True})
        h.ws.push({"type": "transcript.ai", "text": "HEARTBEAT_OK", "isFinal": True})
        h.ws.push({"type": "transcript.ai", "text": "hi there", "isFinal": True})
        await settle()

        assert h.messages() == [("user", "hello"), ("assistant", "hi there")]
        assert h.messages(other.id) == []
        # The origin talk is not shown, so nothing is surfaced live
        assert seen == []

        await h.voice.disconnect()

    asyncio.run(scenario())


def test_server_error_disconnects():
    async def scenario() -> None:
        h = Harness()
        await h.voice.connect(RealtimeVoiceConfig(provider="openai"))

        h.ws.push({"type": "error", "message": "provider down"})
        await settle()

        assert h.errors == ["provider down"]
        assert h.voice.state is VoiceState.DISCONNECTED
        assert h.ws.closed

    asyncio.run(scenario())


def test_session_end_disconnects():
    async def scenario() -> None:
        h = Harness()
        await h.voice.connect(RealtimeVoiceConfig(provider="openai"))

        h.ws.push({"type": "session.end"})
        await settle()

        assert h.voice.state is VoiceState.DISCONNECTED
        assert h.errors == []

    asyncio.run(scenario())


def test_disconnect_is_idempotent():
    async def scenario() -> None:
        h = Harness()
        await h.voice.connect(RealtimeVoiceConfig(provider="openai"))

        await h.voice.disconnect()
        await h.voice.disconnect()

        assert h.ws.sent_types().count("end") == 1
        assert h.voice.state is VoiceState.DISCONNECTED
        assert h.states.count(VoiceState.DISCONNECTED) == 1

    asyncio.run(scenario())


def test_state_listener_unsubscribe():
    async def scenario() -> None:
        h = Harness()
        seen: list[VoiceState] = []
        unsubscribe = h.voice.add_state_listener(seen.append)
        unsubscribe()
        await h.voice.connect(RealtimeVoiceConfig(provider="openai"))
        assert seen == []
        await h.voice.disconnect()

    asyncio.run(scenario())


def test_fire_and_forget_tasks_are_retained_until_done():
    async def scenario() -> None:
        h = Harness()
        await h.voice.connect(RealtimeVoiceConfig(provider="openai"))
        h.ws.push(audio_msg())
        await settle()

        h.voice.interrupt()
        assert len(h.voice._background) == 1
        await settle()
        assert h.voice._background == set()
        assert h.ws.sent_types().count("interrupt") == 1

        h.ws.push({"type": "session.end"})
        await settle()
        assert h.voice.state is VoiceState.DISCONNECTED
        assert h.voice._background == set()

    asyncio.run(scenario())
