"""
Chat transport contract.

Purpose:
- Define the interface the turn orchestrator streams through
- Keep retries, recovery and persistence OUT of the transport

Rules:
- This file contains NO logic.
- No retries.
- No knowledge of talks, stores or UI.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Sequence

from context.models import Message
from orchestrator.cancellation import CancelToken
from protocol.frames import StreamChunk, Usage


@dataclass(frozen=True)
class ImagePayload:
    """Inline image sent with a talk-mode message."""
    base64: str
    mime_type: str


@dataclass(frozen=True)
class ChatRequest:
    """
    Everything a transport needs for one call.

    gateway_talk_id set:
        talk mode; the gateway holds history, `history` is ignored.
    recovery:
        `turn_input` is a continuation instruction, not a user message.
    """
    turn_input: str
    history: Sequence[Message] = ()
    model: str | None = None
    system_prompt: str | None = None
    gateway_talk_id: str | None = None
    recovery: bool = False
    image: ImagePayload | None = None


@dataclass(frozen=True)
class ChatResponse:
    content: str
    usage: Usage | None = None
    model: str | None = None


class TokenStream(ABC):
    """
    Single-consumption, finite async iterator of StreamChunk.

    Contract:
    - Yields content and tool events in arrival order.
    - Raises a StreamError subclass on failure; the exception carries
      partial_content (the content yielded so far).
    - partial_text / usage / model stay readable after iteration ends.
    """

    @property
    @abstractmethod
    def partial_text(self) -> str:
        raise NotImplementedError

    @property
    @abstractmethod
    def usage(self) -> Usage | None:
        raise NotImplementedError

    @property
    @abstractmethod
    def model(self) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError

    @abstractmethod
    async def aclose(self) -> None:
        """Release the underlying response. Idempotent."""
        raise NotImplementedError


class ChatTransport(ABC):
    """Streaming chat transport (direct or talk mode)."""

    @abstractmethod
    async def open(
        self,
        request: ChatRequest,
        cancel: CancelToken | None,
        *,
        timeout_s: float,
    ) -> TokenStream:
        """
        Open a token stream for one request.

        Must NOT retry internally. Connection and status failures raise
        StreamError subclasses (possibly from the first iteration).
        """
        raise NotImplementedError


class CompletionTransport(ABC):
    """Non-streaming completion used as the zero-chunk fallback."""

    @abstractmethod
    async def complete(
        self,
        request: ChatRequest,
        cancel: CancelToken | None,
        *,
        timeout_s: float,
    ) -> ChatResponse:
        raise NotImplementedError
