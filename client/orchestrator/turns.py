"""
Turn orchestrator.

Responsibilities:
- Run one user turn end to end: persist input, stream, recover, classify
- Apply the retry policy (one recovery retry for transient failures)
- Apply the zero-chunk fallback (exactly one non-streaming call)
- Persist results to the ORIGINATING talk, whatever is active by then
- Report progress to an observer only while the originating talk is active

Non-responsibilities:
- No rendering (the observer decides what to show)
- No wire formats (transports)
- No merge policy (store)

Turn lifecycle:

    submit_turn()
      -> capture TurnContext
      -> append user message
      -> stream  --StreamError(transient)-->  recovery stream (once)
         |  zero content                        |
         v                                      v
      fallback (once)                       partial + resumed
      -> classify content -> persist -> TurnResult
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Awaitable, Callable, Sequence

from adapters.llm.base import (
    ChatRequest,
    ChatTransport,
    CompletionTransport,
    ImagePayload,
)
from adapters.llm.prompts import build_system_prompt, parse_job_blocks
from context.models import AttachmentMeta, Message, TalkAgent
from context.talks import ActiveTalk, TalkNotFound, TalkStore
from observability.logger import log_event
from orchestrator.cancellation import CancelToken, await_or_cancel
from orchestrator.errors import (
    ErrorKind,
    StreamError,
    TurnError,
    TurnInFlightError,
)
from orchestrator.retry import (
    Classification,
    classify,
    friendly_error_message,
    get_retry_delay_ms,
    merge_recovered,
    plan_recovery,
    should_reprobe_model,
    should_retry,
)
from protocol.frames import ContentChunk, ToolEndChunk, ToolStartChunk, Usage
from spec import (
    CHAT_TIMEOUT_S,
    DEFAULT_MODEL,
    NO_RESPONSE_MESSAGE,
    TOOL_ARGS_PREVIEW_CHARS,
    TOOL_RESULT_PREVIEW_CHARS,
    is_gateway_sentinel,
    looks_like_gateway_error,
)


SleepFn = Callable[[float], Awaitable[None]]


# =============================================================================
# Types
# =============================================================================

class TurnOutcome(str, Enum):
    ASSISTANT = "assistant"
    SENTINEL = "sentinel"
    GATEWAY_ERROR = "gateway_error"
    EMPTY = "empty"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TurnContext:
    """
    Everything a turn needs, captured once when it starts.

    Nothing here is re-read from the store or the active-talk holder
    after the first suspension point.
    """
    talk_id: str
    session_id: str
    gateway_talk_id: str | None
    model: str
    system_prompt: str | None
    primary_agent: TalkAgent | None
    history: tuple[Message, ...]


@dataclass(frozen=True)
class TurnResult:
    final_content: str
    outcome: TurnOutcome
    usage: Usage | None = None
    model: str | None = None
    tool_events: tuple[ToolStartChunk | ToolEndChunk, ...] = ()
    terminal_error: TurnError | None = None
    retried: bool = False
    used_fallback: bool = False


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""
    input_per_1m: float = 0.0
    output_per_1m: float = 0.0

    def cost(self, usage: Usage) -> float:
        return (
            usage.prompt_tokens * self.input_per_1m / 1_000_000
            + usage.completion_tokens * self.output_per_1m / 1_000_000
        )


class TurnObserver:
    """
    Progress sink for the UI. Every method is a no-op by default.

    Only called while the turn's originating talk is the active talk,
    except on_model_error which is process-wide.
    """

    def on_stream(self, talk_id: str, text: str) -> None:
        """Accumulated streaming text so far ("" clears the stream view)."""

    def on_message(self, talk_id: str, message: Message) -> None:
        """A message was persisted to the talk."""

    def on_notice(self, talk_id: str, text: str) -> None:
        """Ephemeral notice (tool activity, scheduled jobs); not persisted."""

    def on_speak(self, text: str) -> None:
        """Final assistant text for voice playback."""

    def on_model_error(self, raw_error: str) -> None:
        """The active model should be re-probed."""


@dataclass
class _Accum:
    parts: list[str] = field(default_factory=list)
    tool_events: list[ToolStartChunk | ToolEndChunk] = field(default_factory=list)
    usage: Usage | None = None
    model: str | None = None

    @property
    def content(self) -> str:
        return "".join(self.parts)


# =============================================================================
# Orchestrator
# =============================================================================

class TurnOrchestrator:
    """
    Drives chat turns for every talk.

    Concurrency:
    - At most one in-flight turn per talk (TurnInFlightError otherwise)
    - Turns for different talks may run concurrently
    """

    def __init__(
        self,
        *,
        store: TalkStore,
        active: ActiveTalk,
        transport: ChatTransport,
        fallback: CompletionTransport | None = None,
        observer: TurnObserver | None = None,
        pricing: ModelPricing | None = None,
        default_model: str = DEFAULT_MODEL,
        timeout_s: float = CHAT_TIMEOUT_S,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._store = store
        self._active = active
        self._transport = transport
        self._fallback = fallback
        self._observer = observer or TurnObserver()
        self._pricing = pricing or ModelPricing()
        self._default_model = default_model
        self._timeout_s = timeout_s
        self._sleep = sleep

        self._in_flight: dict[str, CancelToken] = {}
        self.session_cost: float = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_processing(self, talk_id: str | None = None) -> bool:
        talk_id = talk_id or self._active.get()
        return talk_id is not None and talk_id in self._in_flight

    def cancel_turn(self, talk_id: str | None = None) -> bool:
        """Cancel the in-flight turn; partial content is kept, never retried."""
        talk_id = talk_id or self._active.get()
        if talk_id is None:
            return False
        token = self._in_flight.get(talk_id)
        if token is None:
            return False
        token.cancel("user_cancelled")
        return True

    async def submit_turn(
        self,
        text: str,
        attachment: AttachmentMeta | None = None,
        cancel: CancelToken | None = None,
        *,
        image: ImagePayload | None = None,
    ) -> TurnResult:
        """
        Run one turn for the active talk.

        Raises:
            ValueError on blank input or when no talk is active.
            TurnInFlightError if this talk already has a turn in flight.
            TalkNotFound if the active talk vanished from the store.
        """
        trimmed = text.strip()
        if not trimmed:
            raise ValueError("turn input must not be blank")

        talk_id = self._active.get()
        if talk_id is None:
            raise ValueError("no active talk")
        if talk_id in self._in_flight:
            raise TurnInFlightError(talk_id)

        token = cancel or CancelToken()
        self._in_flight[talk_id] = token
        try:
            ctx = self._capture(talk_id)

            user_msg = Message.create("user", trimmed, attachment=attachment)
            self._store.append_message(ctx.talk_id, user_msg)
            self._notify_message(ctx, user_msg)

            log_event({
                "event_type": "turn_started",
                "talk_id": ctx.talk_id,
                "session_id": ctx.session_id,
                "gateway_talk_id": ctx.gateway_talk_id,
                "model": ctx.model,
                "input_chars": len(trimmed),
            })

            request = ChatRequest(
                turn_input=trimmed,
                history=ctx.history,
                model=ctx.model,
                system_prompt=ctx.system_prompt,
                gateway_talk_id=ctx.gateway_talk_id,
                image=image,
            )
            return await self._run(ctx, request, token)
        finally:
            if self._in_flight.get(talk_id) is token:
                del self._in_flight[talk_id]

    # ------------------------------------------------------------------
    # Turn phases
    # ------------------------------------------------------------------

    async def _run(self, ctx: TurnContext, request: ChatRequest, token: CancelToken) -> TurnResult:
        first = _Accum()
        try:
            await self._stream_once(ctx, request, token, first)
        except StreamError as err:
            return await self._recover(ctx, request, token, first, err)

        if first.content.strip():
            return self._finish(ctx, first.content, [first])

        return await self._run_fallback(ctx, request, token, first)

    async def _recover(
        self,
        ctx: TurnContext,
        request: ChatRequest,
        token: CancelToken,
        first: _Accum,
        err: StreamError,
    ) -> TurnResult:
        partial = err.partial_content or first.content
        classification = classify(err)

        if classification.kind is ErrorKind.CANCELLED:
            return self._finish_cancelled(ctx, partial, [first])

        if not should_retry(classification, attempt=0):
            return self._finish_failed(ctx, err, classification, partial, [first])

        delay_ms = get_retry_delay_ms(classification)
        log_event({
            "event_type": "turn_retry",
            "talk_id": ctx.talk_id,
            "session_id": ctx.session_id,
            "kind": classification.kind.value,
            "error": str(err),
            "partial_chars": len(partial),
            "delay_ms": delay_ms,
        })
        self._notify_stream(ctx, partial + "\n\n[retrying...]")

        second = _Accum()
        try:
            await await_or_cancel(
                self._sleep(delay_ms / 1000.0),
                token,
                timeout_s=None,
                partial_content=partial,
            )
            plan = plan_recovery(request.turn_input, partial)
            retry_request = replace(
                request,
                turn_input=plan.text,
                recovery=plan.recovery,
                history=_recovery_history(ctx, request, partial) if plan.recovery else request.history,
                image=None if plan.recovery else request.image,
            )
            await self._stream_once(ctx, retry_request, token, second, prefix=partial)
        except StreamError as err2:
            merged = merge_recovered(partial, err2.partial_content or second.content)
            classification2 = classify(err2)
            if classification2.kind is ErrorKind.CANCELLED:
                return self._finish_cancelled(ctx, merged, [first, second], retried=True)
            return self._finish_failed(ctx, err2, classification2, merged, [first, second], retried=True)

        merged = merge_recovered(partial, second.content)
        return self._finish(ctx, merged, [first, second], retried=True)

    async def _run_fallback(
        self,
        ctx: TurnContext,
        request: ChatRequest,
        token: CancelToken,
        first: _Accum,
    ) -> TurnResult:
        if self._fallback is None:
            return self._finish(ctx, first.content, [first])

        log_event({
            "event_type": "turn_fallback",
            "talk_id": ctx.talk_id,
            "session_id": ctx.session_id,
        })
        self._notify_stream(ctx, "retrying...")

        fallback = _Accum()
        try:
            resp = await self._fallback.complete(request, token, timeout_s=self._timeout_s)
        except StreamError as err:
            classification = classify(err)
            if classification.kind is ErrorKind.CANCELLED:
                return self._finish_cancelled(ctx, "", [first], used_fallback=True)
            return self._finish_failed(ctx, err, classification, "", [first], used_fallback=True)

        fallback.parts.append(resp.content)
        fallback.usage = resp.usage
        fallback.model = resp.model
        return self._finish(ctx, resp.content, [first, fallback], used_fallback=True)

    async def _stream_once(
        self,
        ctx: TurnContext,
        request: ChatRequest,
        token: CancelToken,
        acc: _Accum,
        *,
        prefix: str = "",
    ) -> None:
        stream = await self._transport.open(request, token, timeout_s=self._timeout_s)
        try:
            async for chunk in stream:
                if isinstance(chunk, ContentChunk):
                    acc.parts.append(chunk.text)
                    self._notify_stream(ctx, prefix + acc.content)
                else:
                    acc.tool_events.append(chunk)
                    self._notify_notice(ctx, _tool_notice(chunk))
        finally:
            # Usage reported before a failure still counts toward the turn
            acc.usage = stream.usage
            acc.model = stream.model
            await stream.aclose()

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _finish(
        self,
        ctx: TurnContext,
        content: str,
        accs: Sequence[_Accum],
        *,
        retried: bool = False,
        used_fallback: bool = False,
    ) -> TurnResult:
        usage = _sum_usage(accs)
        model = next((a.model for a in reversed(accs) if a.model), None) or ctx.model
        self._accumulate_cost(usage)
        self._notify_stream(ctx, "")

        if not content.strip():
            outcome = TurnOutcome.EMPTY
            self._append(ctx, Message.create("system", NO_RESPONSE_MESSAGE))
        elif looks_like_gateway_error(content):
            outcome = TurnOutcome.GATEWAY_ERROR
            self._append(ctx, Message.create("system", f"Gateway error: {content}"))
        elif is_gateway_sentinel(content):
            outcome = TurnOutcome.SENTINEL
        else:
            outcome = TurnOutcome.ASSISTANT
            self._append(ctx, self._assistant_message(ctx, content, model))
            if self._active.is_active(ctx.talk_id):
                for job in parse_job_blocks(content):
                    self._observer.on_notice(ctx.talk_id, job.notice())
                self._observer.on_speak(content)

        log_event({
            "event_type": "turn_completed",
            "talk_id": ctx.talk_id,
            "session_id": ctx.session_id,
            "outcome": outcome.value,
            "retried": retried,
            "used_fallback": used_fallback,
            "content_chars": len(content),
            "prompt_tokens": usage.prompt_tokens if usage else None,
            "completion_tokens": usage.completion_tokens if usage else None,
        })

        return TurnResult(
            final_content=content,
            outcome=outcome,
            usage=usage,
            model=model,
            tool_events=_tool_events(accs),
            retried=retried,
            used_fallback=used_fallback,
        )

    def _finish_failed(
        self,
        ctx: TurnContext,
        err: BaseException,
        classification: Classification,
        partial: str,
        accs: Sequence[_Accum],
        *,
        retried: bool = False,
        used_fallback: bool = False,
    ) -> TurnResult:
        raw = str(err) or type(err).__name__
        message = friendly_error_message(raw)
        reprobe = should_reprobe_model(err)
        usage = _sum_usage(accs)
        self._accumulate_cost(usage)
        self._notify_stream(ctx, "")

        if partial.strip():
            self._append(ctx, self._assistant_message(ctx, partial, ctx.model))
        self._append(ctx, Message.create("system", f"Error: {message}"))

        if reprobe:
            self._observer.on_model_error(raw)

        log_event({
            "event_type": "turn_failed",
            "talk_id": ctx.talk_id,
            "session_id": ctx.session_id,
            "kind": classification.kind.value,
            "disposition": classification.disposition.value,
            "error": raw,
            "partial_chars": len(partial),
            "retried": retried,
            "reprobe": reprobe,
        })

        return TurnResult(
            final_content=partial,
            outcome=TurnOutcome.FAILED,
            usage=usage,
            tool_events=_tool_events(accs),
            terminal_error=TurnError(kind=classification.kind, message=message, reprobe=reprobe),
            retried=retried,
            used_fallback=used_fallback,
        )

    def _finish_cancelled(
        self,
        ctx: TurnContext,
        partial: str,
        accs: Sequence[_Accum],
        *,
        retried: bool = False,
        used_fallback: bool = False,
    ) -> TurnResult:
        usage = _sum_usage(accs)
        self._accumulate_cost(usage)
        self._notify_stream(ctx, "")
        if partial.strip() and not is_gateway_sentinel(partial):
            self._append(ctx, self._assistant_message(ctx, partial, ctx.model))

        log_event({
            "event_type": "turn_cancelled",
            "talk_id": ctx.talk_id,
            "session_id": ctx.session_id,
            "partial_chars": len(partial),
            "retried": retried,
        })

        return TurnResult(
            final_content=partial,
            outcome=TurnOutcome.CANCELLED,
            usage=usage,
            tool_events=_tool_events(accs),
            retried=retried,
            used_fallback=used_fallback,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _capture(self, talk_id: str) -> TurnContext:
        talk = self._store.get_talk(talk_id)
        session = self._store.get_session(talk_id)
        if talk is None or session is None:
            raise TalkNotFound(talk_id)
        return TurnContext(
            talk_id=talk.id,
            session_id=talk.session_id,
            gateway_talk_id=talk.gateway_talk_id,
            model=talk.model or session.model or self._default_model,
            system_prompt=build_system_prompt(talk.objective, talk.directives),
            primary_agent=talk.primary_agent,
            history=tuple(session.messages),
        )

    def _assistant_message(self, ctx: TurnContext, content: str, model: str | None) -> Message:
        agent = ctx.primary_agent
        return Message.create(
            "assistant",
            content,
            model=model,
            agent_name=agent.name if agent else None,
            agent_role=agent.role if agent else None,
        )

    def _append(self, ctx: TurnContext, message: Message) -> None:
        # Always the originating talk, even if the user switched away
        self._store.append_message(ctx.talk_id, message)
        self._notify_message(ctx, message)

    def _accumulate_cost(self, usage: Usage | None) -> None:
        if usage is not None:
            self.session_cost += self._pricing.cost(usage)

    def _notify_stream(self, ctx: TurnContext, text: str) -> None:
        if self._active.is_active(ctx.talk_id):
            self._observer.on_stream(ctx.talk_id, text)

    def _notify_message(self, ctx: TurnContext, message: Message) -> None:
        if self._active.is_active(ctx.talk_id):
            self._observer.on_message(ctx.talk_id, message)

    def _notify_notice(self, ctx: TurnContext, text: str) -> None:
        if self._active.is_active(ctx.talk_id):
            self._observer.on_notice(ctx.talk_id, text)


def _recovery_history(ctx: TurnContext, request: ChatRequest, partial: str) -> tuple[Message, ...]:
    """Direct-mode history for a continuation: prior turns, the input, the partial answer."""
    return tuple(ctx.history) + (
        Message.create("user", request.turn_input),
        Message.create("assistant", partial),
    )


def _sum_usage(accs: Sequence[_Accum]) -> Usage | None:
    usages = [a.usage for a in accs if a.usage is not None]
    if not usages:
        return None
    total = usages[0]
    for u in usages[1:]:
        total = total + u
    return total


def _tool_events(accs: Sequence[_Accum]) -> tuple[ToolStartChunk | ToolEndChunk, ...]:
    return tuple(e for a in accs for e in a.tool_events)


def _preview(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _tool_notice(chunk: ToolStartChunk | ToolEndChunk) -> str:
    if isinstance(chunk, ToolStartChunk):
        return f"[Tool] {chunk.name}({_preview(chunk.arguments, TOOL_ARGS_PREVIEW_CHARS)})"
    status = "OK" if chunk.success else "ERROR"
    return (
        f"[Tool {status}] {chunk.name} ({chunk.duration_ms}ms): "
        f"{_preview(chunk.content, TOOL_RESULT_PREVIEW_CHARS)}"
    )
