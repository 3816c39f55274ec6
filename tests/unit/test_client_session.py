# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
from pathlib import Path
from typing import Any, AsyncIterator

import pytest

from adapters.llm.base import ChatRequest, ChatResponse, ChatTransport, CompletionTransport, TokenStream
from adapters.voice.realtime import VoiceState
from cli.main import _handle_command, build_parser
from config import AppConfig
from context.merge import GatewayTalkSnapshot, SnapshotError
from context.talks import TalkNotFound
from orchestrator.cancellation import CancelToken
from orchestrator.errors import StreamConnectionError
from orchestrator.turns import TurnOutcome
from protocol.frames import ContentChunk, Usage
from session.client_session import ClientSession
from session.gateway import SyncReport


class OneShotStream(TokenStream):
    def __init__(self, text: str) -> None:
        self._text = text

    @property
    def partial_text(self) -> str:
        return self._text

    @property
    def usage(self) -> Usage | None:
        return None

    @property
    def model(self) -> str | None:
        return None

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        yield ContentChunk(self._text)

    async def aclose(self) -> None:
        return None


class EchoTransport(ChatTransport):
    def __init__(self) -> None:
        self.requests: list[ChatRequest] = []
        self.closed = False

    async def open(self, request: ChatRequest, cancel: CancelToken | None, *, timeout_s: float) -> TokenStream:
        self.requests.append(request)
        return OneShotStream(f"echo: {request.turn_input}")

    async def close(self) -> None:
        self.closed = True


class UnusedFallback(CompletionTransport):
    def __init__(self) -> None:
        self.closed = False

    async def complete(self, request: ChatRequest, cancel: CancelToken | None, *, timeout_s: float) -> ChatResponse:
        raise AssertionError("fallback should not be used")

    async def close(self) -> None:
        self.closed = True


class FakeGatewayClient:
    def __init__(self) -> None:
        self.talks: dict[str, GatewayTalkSnapshot] = {}
        self.closed = False

    async def check_health(self, cancel: CancelToken | None = None) -> bool:
        return True

    async def fetch_talk(self, gateway_talk_id: str, cancel: CancelToken | None = None) -> GatewayTalkSnapshot | None:
        return self.talks.get(gateway_talk_id)

    async def close(self) -> None:
        self.closed = True


def make_session(tmp_path: Path, **overrides: Any) -> ClientSession:
    kwargs: dict[str, Any] = {
        "config": AppConfig(data_dir=tmp_path, default_model="m-default"),
        "transport": EchoTransport(),
        "fallback": UnusedFallback(),
        "gateway": FakeGatewayClient(),
    }
    kwargs.update(overrides)
    return ClientSession(**kwargs)


def test_start_creates_talk_then_resumes_saved_one(tmp_path: Path):
    async def first_run() -> str:
        session = make_session(tmp_path)
        await session.start()
        talk_id = session.active_talk_id
        assert talk_id is not None

        result = await session.submit_turn("hello")
        assert result.outcome is TurnOutcome.ASSISTANT
        assert result.final_content == "echo: hello"

        session.save_talk()
        await session.shutdown()
        return talk_id

    talk_id = asyncio.run(first_run())

    async def second_run() -> None:
        session = make_session(tmp_path)
        await session.start()
        assert session.active_talk_id == talk_id
        messages = session.store.get_session(talk_id).messages
        assert [m.content for m in messages] == ["hello", "echo: hello"]
        await session.shutdown()

    asyncio.run(second_run())


def test_shutdown_releases_transports(tmp_path: Path):
    transport = EchoTransport()
    fallback = UnusedFallback()
    gateway = FakeGatewayClient()

    async def scenario() -> None:
        session = make_session(tmp_path, transport=transport, fallback=fallback, gateway=gateway)
        await session.start(poll_gateway=True)
        await session.shutdown()

    asyncio.run(scenario())

    assert transport.closed
    assert fallback.closed
    assert gateway.closed


def test_switch_and_new_talk(tmp_path: Path):
    async def scenario() -> None:
        session = make_session(tmp_path)
        await session.start()
        first = session.active_talk_id

        second = session.new_talk()
        assert session.active_talk_id == second.id
        assert second.model == "m-default"

        session.switch_talk(first)
        assert session.active_talk_id == first

        with pytest.raises(TalkNotFound):
            session.switch_talk("missing")

        await session.shutdown()

    asyncio.run(scenario())


def test_open_gateway_talk_imports_and_activates(tmp_path: Path):
    gateway = FakeGatewayClient()
    gateway.talks["gw-1"] = GatewayTalkSnapshot(id="gw-1", created_at=1, updated_at=2, topic_title="Remote")
    transport = EchoTransport()

    async def scenario() -> None:
        session = make_session(tmp_path, gateway=gateway, transport=transport)
        await session.start()

        talk = await session.open_gateway_talk("gw-1")
        assert talk is not None
        assert session.active_talk_id == "gw-1"
        assert await session.open_gateway_talk("nope") is None

        await session.submit_turn("hi")
        report = await session.sync_gateway_talks()
        assert isinstance(report, SyncReport)
        assert report.imported == ("gw-1",)

        await session.shutdown()

    asyncio.run(scenario())

    # Gateway-backed talks stream in talk mode
    assert transport.requests[0].gateway_talk_id == "gw-1"


def test_cli_parser():
    args = build_parser().parse_args(["--gateway", "http://gw:1", "--token", "t", "--poll"])
    assert args.gateway == "http://gw:1"
    assert args.token == "t"
    assert args.poll is True
    assert args.data_dir is None


class OfflineGatewayClient(FakeGatewayClient):
    def __init__(self, error: Exception) -> None:
        super().__init__()
        self.error = error

    async def fetch_talk(self, gateway_talk_id: str, cancel: CancelToken | None = None) -> GatewayTalkSnapshot | None:
        raise self.error


@pytest.mark.parametrize("error, expected", [
    (StreamConnectionError("Cannot connect to gateway: refused"), "* Connection failed."),
    (SnapshotError("talk snapshot is missing 'id'"), "* talk snapshot is missing 'id'"),
])
def test_cli_open_reports_gateway_errors_and_keeps_running(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], error: Exception, expected: str,
):
    async def scenario() -> bool:
        session = make_session(tmp_path, gateway=OfflineGatewayClient(error))
        await session.start()
        try:
            return await _handle_command(session, "/open gw-x")
        finally:
            await session.shutdown()

    assert asyncio.run(scenario()) is True
    assert capsys.readouterr().out.startswith(expected)


class FakeVoice:
    def __init__(self) -> None:
        self.configs: list[Any] = []
        self.state = VoiceState.DISCONNECTED
        self.listeners: list[Any] = []
        self.interrupts = 0
        self.disconnects = 0

    def add_state_listener(self, listener: Any) -> Any:
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    async def connect(self, config: Any) -> bool:
        self.configs.append(config)
        self.state = VoiceState.LISTENING
        return True

    def interrupt(self) -> None:
        self.interrupts += 1

    async def send_audio(self, pcm: bytes) -> bool:
        return True

    async def disconnect(self) -> None:
        self.disconnects += 1
        self.state = VoiceState.DISCONNECTED


def test_voice_surface_uses_talk_objective(tmp_path: Path):
    voice = FakeVoice()
    config = AppConfig(data_dir=tmp_path, voice_provider="gemini", voice_name="Puck")

    async def scenario() -> None:
        session = make_session(tmp_path, config=config, voice=voice)
        await session.start()
        session.store.set_objective(session.active_talk_id, "practice spanish")

        unsubscribe = session.add_voice_state_listener(lambda state: None)
        assert await session.connect_voice()
        assert session.voice_state is VoiceState.LISTENING
        session.interrupt()
        assert await session.send_audio(b"\x00\x00")
        await session.disconnect_voice()
        unsubscribe()

        assert session.gateway_status == "connecting"
        await session.shutdown()

    asyncio.run(scenario())

    cfg = voice.configs[0]
    assert cfg.provider == "gemini"
    assert cfg.voice == "Puck"
    assert "practice spanish" in cfg.system_prompt
    assert voice.interrupts == 1
    # Explicit disconnect plus the one from shutdown()
    assert voice.disconnects == 2
    assert voice.listeners == []
