"""
Client session container.

Responsibilities:
- Build the store, transports and orchestrator from AppConfig (the only
  place that does so)
- Own the active-talk holder
- Own lifecycle: start() loads persisted talks, shutdown() releases
  sockets, HTTP sessions and background tasks
- Expose the operations a UI calls

NOT a state machine. Contains no orchestration logic.
"""

from __future__ import annotations

import asyncio
from typing import Callable

from adapters.llm.base import ChatTransport, CompletionTransport, ImagePayload
from adapters.llm.completion import CompletionClient
from adapters.llm.prompts import build_system_prompt
from adapters.llm.streaming import GatewayStreamTransport
from adapters.voice.realtime import (
    AudioSink,
    RealtimeVoiceConfig,
    RealtimeVoiceTransport,
    VoiceState,
)
from config import AppConfig
from context.merge import GatewayTalkSnapshot
from context.models import AttachmentMeta, Talk
from context.persistence import TalkRecordStore
from context.talks import ActiveTalk, TalkNotFound, TalkStore
from observability.logger import log_event
from orchestrator.cancellation import CancelToken
from orchestrator.turns import ModelPricing, TurnObserver, TurnOrchestrator, TurnResult
from session.gateway import GatewayClient, GatewaySync, SyncReport


class NullAudioSink:
    """Discards audio. Used when no playback device is attached."""

    async def play(self, pcm: bytes) -> None:
        return None

    def stop(self) -> None:
        return None


class ClientSession:
    """One per process."""

    def __init__(
        self,
        *,
        config: AppConfig,
        store: TalkStore | None = None,
        transport: ChatTransport | None = None,
        fallback: CompletionTransport | None = None,
        gateway: GatewayClient | None = None,
        voice: RealtimeVoiceTransport | None = None,
        sink: AudioSink | None = None,
        observer: TurnObserver | None = None,
        pricing: ModelPricing | None = None,
    ) -> None:
        self._config = config
        self._active = ActiveTalk()
        self._store = store or TalkStore(TalkRecordStore(config.talks_dir))

        self._transport = transport or GatewayStreamTransport(
            gateway_url=config.gateway_url,
            token=config.gateway_token,
            agent_id=config.agent_id,
        )
        self._fallback = fallback or CompletionClient(
            gateway_url=config.gateway_url,
            token=config.gateway_token,
            agent_id=config.agent_id,
            default_model=config.default_model,
        )
        self._gateway = gateway or GatewayClient(
            gateway_url=config.gateway_url,
            token=config.gateway_token,
        )
        self._sync = GatewaySync(client=self._gateway, store=self._store)

        self._turns = TurnOrchestrator(
            store=self._store,
            active=self._active,
            transport=self._transport,
            fallback=self._fallback,
            observer=observer,
            pricing=pricing,
            default_model=config.default_model,
        )
        self._voice = voice or RealtimeVoiceTransport(
            gateway_url=config.gateway_url,
            token=config.gateway_token,
            store=self._store,
            active=self._active,
            sink=sink or NullAudioSink(),
        )

        self._sync_cancel: CancelToken | None = None
        self._sync_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, *, poll_gateway: bool = False) -> None:
        loaded = self._store.load()
        saved = self._store.list_saved_talks()
        if saved:
            self._active.set(saved[0].id)
        else:
            self.new_talk()

        if poll_gateway:
            self._sync_cancel = CancelToken()
            self._sync_task = asyncio.create_task(self._sync.run(self._sync_cancel))

        log_event({
            "event_type": "client_session_started",
            "talks_loaded": loaded,
            "active_talk_id": self._active.get(),
            "gateway_url": self._config.gateway_url,
        })

    async def shutdown(self) -> None:
        self._turns.cancel_turn()
        if self._sync_cancel is not None:
            self._sync_cancel.cancel("shutdown")
        if self._sync_task is not None:
            await asyncio.gather(self._sync_task, return_exceptions=True)
            self._sync_task = None

        await self._voice.disconnect()

        for closable in (self._transport, self._fallback, self._gateway):
            close = getattr(closable, "close", None)
            if close is not None:
                await close()

        log_event({"event_type": "client_session_shutdown"})

    # ------------------------------------------------------------------
    # Talks
    # ------------------------------------------------------------------

    @property
    def store(self) -> TalkStore:
        return self._store

    @property
    def active_talk_id(self) -> str | None:
        return self._active.get()

    @property
    def gateway_status(self) -> str:
        return self._sync.status.value

    def new_talk(self) -> Talk:
        talk = self._store.create_talk(model=self._config.default_model)
        self._active.set(talk.id)
        return talk

    def switch_talk(self, talk_id: str) -> Talk:
        talk = self._store.get_talk(talk_id)
        if talk is None:
            raise TalkNotFound(talk_id)
        self._active.set(talk_id)
        return talk

    def save_talk(self) -> None:
        talk_id = self._require_active()
        self._store.save_talk(talk_id)

    def import_gateway_talk(self, snapshot: GatewayTalkSnapshot) -> Talk:
        return self._store.import_gateway_talk(snapshot)

    async def sync_gateway_talks(self) -> SyncReport:
        return await self._sync.sync_once()

    async def open_gateway_talk(self, gateway_talk_id: str) -> Talk | None:
        """Fetch, import and activate a gateway talk; None if the gateway lacks it."""
        snapshot = await self._gateway.fetch_talk(gateway_talk_id)
        if snapshot is None:
            return None
        talk = self._store.import_gateway_talk(snapshot)
        self._active.set(talk.id)
        return talk

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    @property
    def session_cost(self) -> float:
        return self._turns.session_cost

    def is_processing(self) -> bool:
        return self._turns.is_processing()

    async def submit_turn(
        self,
        text: str,
        attachment: AttachmentMeta | None = None,
        *,
        image: ImagePayload | None = None,
    ) -> TurnResult:
        return await self._turns.submit_turn(text, attachment, image=image)

    def cancel_turn(self) -> bool:
        return self._turns.cancel_turn()

    # ------------------------------------------------------------------
    # Voice
    # ------------------------------------------------------------------

    @property
    def voice_state(self) -> VoiceState:
        return self._voice.state

    def add_voice_state_listener(self, listener: Callable[[VoiceState], None]) -> Callable[[], None]:
        return self._voice.add_state_listener(listener)

    async def connect_voice(self, config: RealtimeVoiceConfig | None = None) -> bool:
        if config is None:
            talk = self._store.get_talk(self._require_active())
            config = RealtimeVoiceConfig(
                provider=self._config.voice_provider or "openai",
                voice=self._config.voice_name,
                system_prompt=build_system_prompt(
                    talk.objective if talk else None,
                    talk.directives if talk else (),
                ),
            )
        return await self._voice.connect(config)

    def interrupt(self) -> None:
        self._voice.interrupt()

    async def send_audio(self, pcm: bytes) -> bool:
        return await self._voice.send_audio(pcm)

    async def disconnect_voice(self) -> None:
        await self._voice.disconnect()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_active(self) -> str:
        talk_id = self._active.get()
        if talk_id is None:
            raise TalkNotFound("no active talk")
        return talk_id
