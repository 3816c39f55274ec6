"""
Realtime voice transport (gateway WebSocket, full duplex, barge-in).

State machine:

    disconnected --connect()--------------------------> connecting
    connecting   --session.start----------------------> listening
    connecting   --error / timeout / cancel-----------> disconnected
    listening    --AI audio / transcript.ai(partial)--> aiSpeaking
    aiSpeaking   --transcript.ai(final) / drained-----> listening
    listening|aiSpeaking --interrupt()----------------> listening
    any          --disconnect() / session.end / error-> disconnected

Core model (IMPORTANT):
- interrupt() is synchronous. Local playback stops before it returns; the
  gateway is told afterwards (fire-and-forget). Until the next
  transcript.user arrives, AI audio and AI transcripts still in flight
  from the interrupted response are discarded.
- Mic audio captured while the AI speaks is held client-side and flushed
  in order when the state returns to listening.
- Final transcripts go to the talk that was active at connect(), even if
  the user switches talks mid-session.

Design constraints:
- Audio devices are out of scope: playback goes through an injected AudioSink.
- No chat-turn knowledge; the store is the only shared state.
"""

from __future__ import annotations

import asyncio
import urllib.parse
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Protocol

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from audio.pcm import rms_level
from audio.playback import PcmBuffer
from context.models import Message
from context.talks import ActiveTalk, StoreError, TalkStore
from observability.logger import log_event
from orchestrator.cancellation import CancelToken, await_or_cancel
from orchestrator.errors import StreamError
from protocol.frames import FrameError
from protocol.realtime import (
    AudioMessage,
    RealtimeErrorMessage,
    RealtimeServerMessage,
    SessionEndMessage,
    SessionStartMessage,
    TranscriptMessage,
    decode_realtime_message,
    encode_audio,
    encode_config,
    encode_end,
    encode_interrupt,
)
from spec import (
    MAX_REALTIME_MESSAGE_BYTES,
    OUTBOUND_HOLD_MAX_S,
    PLAYBACK_BUFFER_MAX_S,
    REALTIME_PROVIDERS,
    REALTIME_VOICE_PATH,
    VOICE_CONNECT_TIMEOUT_S,
    is_gateway_sentinel,
)


class VoiceState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LISTENING = "listening"
    AI_SPEAKING = "aiSpeaking"


@dataclass(frozen=True)
class RealtimeVoiceConfig:
    provider: str
    voice: str | None = None
    system_prompt: str | None = None


class AudioSink(Protocol):
    """Speaker output. play() returns once the chunk has been handed to the device."""

    async def play(self, pcm: bytes) -> None: ...

    def stop(self) -> None: ...


StateListener = Callable[[VoiceState], None]
TranscriptCallback = Callable[[str, str, bool], None]
ErrorCallback = Callable[[str], None]
ConnectFn = Callable[..., Awaitable[Any]]


def build_realtime_url(gateway_url: str, provider: str) -> str:
    """http(s)://host[/base] -> ws(s)://host[/base]/api/voice/realtime?provider=..."""
    parts = urllib.parse.urlsplit(gateway_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    path = parts.path.rstrip("/") + REALTIME_VOICE_PATH
    query = urllib.parse.urlencode({"provider": provider})
    return urllib.parse.urlunsplit((scheme, parts.netloc, path, query, ""))


class RealtimeVoiceTransport:
    """
    One transport instance per process; one WebSocket per connect().

    Public interface:
    - connect(config, cancel, timeout_s) -> bool
    - interrupt()            (sync)
    - send_audio(pcm) -> bool
    - notify_playback_drained()
    - disconnect()           (idempotent)
    """

    def __init__(
        self,
        *,
        gateway_url: str,
        token: str | None,
        store: TalkStore,
        active: ActiveTalk,
        sink: AudioSink,
        connect_fn: ConnectFn = ws_connect,
        on_transcript: TranscriptCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self._gateway_url = gateway_url
        self._token = token
        self._store = store
        self._active = active
        self._sink = sink
        self._connect_fn = connect_fn
        self._on_transcript = on_transcript
        self._on_error = on_error

        self._state = VoiceState.DISCONNECTED
        self._listeners: list[StateListener] = []

        self._ws: Any | None = None
        self._recv_task: asyncio.Task[None] | None = None
        self._playback_task: asyncio.Task[None] | None = None
        self._flush_task: asyncio.Task[None] | None = None
        self._send_lock = asyncio.Lock()
        self._background: set[asyncio.Task[None]] = set()
        self._session_started: asyncio.Event | None = None

        self._playback = PcmBuffer(max_depth_s=PLAYBACK_BUFFER_MAX_S, drop_oldest=True)
        self._outbound_hold = PcmBuffer(max_depth_s=OUTBOUND_HOLD_MAX_S)

        self._talk_id: str | None = None
        self._discard_ai = False
        self._input_level = 0.0

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def state(self) -> VoiceState:
        return self._state

    @property
    def talk_id(self) -> str | None:
        """Talk captured at connect(); transcripts are written here."""
        return self._talk_id

    @property
    def input_level(self) -> float:
        """RMS level of the most recent mic chunk (0.0 to 1.0)."""
        return self._input_level

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener; returns an unsubscribe function."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def connect(
        self,
        config: RealtimeVoiceConfig,
        cancel: CancelToken | None = None,
        *,
        timeout_s: float = VOICE_CONNECT_TIMEOUT_S,
    ) -> bool:
        """
        Open the session and wait for session.start.

        Returns False (state back to disconnected) on any failure.
        """
        if config.provider not in REALTIME_PROVIDERS:
            raise ValueError(f"unknown realtime provider: {config.provider!r}")
        if self._state is not VoiceState.DISCONNECTED:
            log_event({"event_type": "voice_connect_ignored", "state": self._state.value})
            return False

        self._talk_id = self._active.get()
        self._discard_ai = False
        self._session_started = asyncio.Event()
        self._set_state(VoiceState.CONNECTING)

        url = build_realtime_url(self._gateway_url, config.provider)
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s

        log_event({
            "event_type": "voice_connecting",
            "talk_id": self._talk_id,
            "provider": config.provider,
        })

        try:
            self._ws = await await_or_cancel(
                self._connect_fn(
                    url,
                    additional_headers=headers,
                    max_size=MAX_REALTIME_MESSAGE_BYTES,
                    open_timeout=None,
                ),
                cancel,
                timeout_s=timeout_s,
            )
            await self._ws.send(encode_config(voice=config.voice, system_prompt=config.system_prompt))
            self._recv_task = asyncio.create_task(self._recv_loop(self._ws))

            await await_or_cancel(
                self._session_started.wait(),
                cancel,
                timeout_s=max(0.0, deadline - loop.time()),
            )
        except (StreamError, WebSocketException, OSError) as e:
            log_event({
                "event_type": "voice_connect_failed",
                "talk_id": self._talk_id,
                "error": f"{type(e).__name__}: {e}",
            })
            await self._close(reason="connect_failed")
            return False

        if self._state is not VoiceState.LISTENING:
            # error/session.end raced session.start
            await self._close(reason="connect_failed")
            return False

        log_event({"event_type": "voice_connected", "talk_id": self._talk_id})
        return True

    def interrupt(self) -> None:
        """
        Barge-in. Synchronous: playback is stopped when this returns.
        """
        if self._state not in (VoiceState.LISTENING, VoiceState.AI_SPEAKING):
            return

        self._stop_playback()
        self._discard_ai = True
        self._set_state(VoiceState.LISTENING)

        ws = self._ws
        if ws is not None:
            # Fire-and-forget; the local state change never waits on the network
            self._spawn(self._send_quietly(ws, encode_interrupt()))

        log_event({"event_type": "voice_interrupt", "talk_id": self._talk_id})

    async def send_audio(self, pcm: bytes) -> bool:
        """
        Send one mic chunk.

        listening:  sent (after any held audio)
        aiSpeaking: held client-side, flushed on return to listening
        otherwise:  rejected
        """
        if not pcm:
            return False
        self._input_level = rms_level(pcm)

        if self._state is VoiceState.AI_SPEAKING:
            return self._outbound_hold.enqueue(pcm)

        if self._state is not VoiceState.LISTENING or self._ws is None:
            return False

        if not self._outbound_hold.is_empty():
            # A flush is pending; keep ordering by queueing behind it
            accepted = self._outbound_hold.enqueue(pcm)
            self._ensure_flush()
            return accepted

        return await self._send(encode_audio(pcm))

    def notify_playback_drained(self) -> None:
        if self._state is VoiceState.AI_SPEAKING:
            self._set_state(VoiceState.LISTENING)

    async def disconnect(self) -> None:
        """Idempotent. Sends `end` best-effort and releases everything."""
        ws = self._ws
        if ws is not None and self._state in (VoiceState.LISTENING, VoiceState.AI_SPEAKING):
            await self._send_quietly(ws, encode_end())
        await self._close(reason="client_disconnect")

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    async def _recv_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    msg = decode_realtime_message(raw)
                except FrameError as e:
                    log_event({
                        "event_type": "voice_message_dropped",
                        "talk_id": self._talk_id,
                        "error": str(e),
                    })
                    continue
                self._handle(msg)
                if self._state is VoiceState.DISCONNECTED:
                    return
        except asyncio.CancelledError:
            return
        except (ConnectionClosed, OSError) as e:
            if self._state is not VoiceState.DISCONNECTED:
                self._report_error(f"Voice connection lost: {e}")
                await self._close(reason="connection_lost")
            return

        # Server closed cleanly
        if self._state is not VoiceState.DISCONNECTED:
            await self._close(reason="server_closed")

    def _handle(self, msg: RealtimeServerMessage) -> None:
        if isinstance(msg, SessionStartMessage):
            if self._state is VoiceState.CONNECTING:
                self._set_state(VoiceState.LISTENING)
            if self._session_started is not None:
                self._session_started.set()
            return

        if isinstance(msg, AudioMessage):
            if self._discard_ai:
                return
            if not self._playback.enqueue(msg.pcm):
                log_event({
                    "event_type": "voice_playback_dropped",
                    "talk_id": self._talk_id,
                    **self._playback.snapshot(),
                })
            if self._state is VoiceState.LISTENING:
                self._set_state(VoiceState.AI_SPEAKING)
            self._ensure_playback()
            return

        if isinstance(msg, TranscriptMessage):
            self._handle_transcript(msg)
            return

        if isinstance(msg, RealtimeErrorMessage):
            self._report_error(msg.message)
            self._schedule_close("server_error")
            return

        if isinstance(msg, SessionEndMessage):
            self._schedule_close("session_end")

    def _handle_transcript(self, msg: TranscriptMessage) -> None:
        if msg.speaker == "user":
            # A new user utterance ends the interrupted response window
            self._discard_ai = False
            self._emit_transcript(msg)
            if msg.is_final and msg.text.strip():
                self._persist(Message.create("user", msg.text.strip()))
            return

        if self._discard_ai:
            return

        self._emit_transcript(msg)
        if not msg.is_final:
            if self._state is VoiceState.LISTENING:
                self._set_state(VoiceState.AI_SPEAKING)
            return

        text = msg.text.strip()
        if text and not is_gateway_sentinel(text):
            self._persist(Message.create("assistant", text))
        if self._state is VoiceState.AI_SPEAKING:
            self._set_state(VoiceState.LISTENING)

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    async def _send(self, payload: str) -> bool:
        ws = self._ws
        if ws is None:
            return False
        async with self._send_lock:
            try:
                await ws.send(payload)
            except (ConnectionClosed, OSError) as e:
                log_event({
                    "event_type": "voice_send_failed",
                    "talk_id": self._talk_id,
                    "error": f"{type(e).__name__}: {e}",
                })
                return False
        return True

    async def _send_quietly(self, ws: Any, payload: str) -> None:
        async with self._send_lock:
            try:
                await ws.send(payload)
            except (ConnectionClosed, OSError):
                pass

    def _ensure_flush(self) -> None:
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_outbound())

    async def _flush_outbound(self) -> None:
        while self._state is VoiceState.LISTENING:
            chunk = self._outbound_hold.dequeue()
            if chunk is None:
                return
            if not await self._send(encode_audio(chunk)):
                return

    # -------------------------------------------------------------------------
    # Playback
    # -------------------------------------------------------------------------

    def _ensure_playback(self) -> None:
        if self._playback_task is None or self._playback_task.done():
            self._playback_task = asyncio.create_task(self._playback_loop())

    async def _playback_loop(self) -> None:
        while True:
            chunk = self._playback.dequeue()
            if chunk is None:
                break
            await self._sink.play(chunk)
        self.notify_playback_drained()

    def _stop_playback(self) -> None:
        self._playback.clear()
        task = self._playback_task
        self._playback_task = None
        if task is not None and not task.done():
            task.cancel()
        self._sink.stop()

    # -------------------------------------------------------------------------
    # State / teardown
    # -------------------------------------------------------------------------

    def _set_state(self, new: VoiceState) -> None:
        old = self._state
        if new is old:
            return
        self._state = new
        log_event({
            "event_type": "voice_state_changed",
            "talk_id": self._talk_id,
            "from": old.value,
            "to": new.value,
        })
        if new is VoiceState.LISTENING and not self._outbound_hold.is_empty():
            self._ensure_flush()
        for listener in list(self._listeners):
            listener(new)

    def _schedule_close(self, reason: str) -> None:
        self._spawn(self._close(reason=reason))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        # The loop only keeps weak references to tasks
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _close(self, *, reason: str) -> None:
        if self._state is VoiceState.DISCONNECTED and self._ws is None:
            return

        ws = self._ws
        self._ws = None

        self._stop_playback()
        self._outbound_hold.clear()
        self._discard_ai = False

        flush = self._flush_task
        self._flush_task = None
        if flush is not None and not flush.done():
            flush.cancel()

        recv = self._recv_task
        self._recv_task = None
        if recv is not None and recv is not asyncio.current_task() and not recv.done():
            recv.cancel()

        if self._session_started is not None:
            # Unblock a connect() still waiting for session.start
            self._session_started.set()

        self._set_state(VoiceState.DISCONNECTED)

        if ws is not None:
            try:
                await ws.close()
            except (WebSocketException, OSError):
                pass

        log_event({"event_type": "voice_disconnected", "talk_id": self._talk_id, "reason": reason})

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _persist(self, message: Message) -> None:
        if self._talk_id is None:
            return
        try:
            self._store.append_message(self._talk_id, message)
        except StoreError as e:
            log_event({
                "event_type": "voice_transcript_not_persisted",
                "talk_id": self._talk_id,
                "error": f"{type(e).__name__}: {e}",
            })

    def _emit_transcript(self, msg: TranscriptMessage) -> None:
        if self._on_transcript is not None and self._talk_id is not None and self._active.is_active(self._talk_id):
            self._on_transcript(msg.speaker, msg.text, msg.is_final)

    def _report_error(self, message: str) -> None:
        log_event({"event_type": "voice_error", "talk_id": self._talk_id, "error": message})
        if self._on_error is not None:
            self._on_error(message)
