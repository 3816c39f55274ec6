"""Non-streaming completion client (zero-chunk fallback)."""
from __future__ import annotations

from typing import Any

import openai

from adapters.llm.base import ChatRequest, ChatResponse, CompletionTransport
from adapters.llm.prompts import build_chat_messages
from adapters.llm.streaming import AGENT_ID_HEADER
from observability.logger import log_event
from orchestrator.cancellation import CancelToken, await_or_cancel
from orchestrator.errors import GatewayHTTPError, StreamConnectionError, StreamTimeout
from orchestrator.retry import parse_retry_after
from protocol.frames import Usage
from spec import DEFAULT_MODEL, OPENAI_BASE_PATH


class CompletionClient(CompletionTransport):
    """
    OpenAI-compatible chat completion against the gateway's /v1 surface.

    The gateway speaks the OpenAI wire format, so the official client is
    used as-is with base_url pointed at the gateway. Always direct mode:
    the local history is sent even for gateway-backed talks.
    """

    def __init__(
        self,
        *,
        gateway_url: str,
        token: str | None,
        agent_id: str | None = None,
        default_model: str = DEFAULT_MODEL,
        client: Any | None = None,
    ) -> None:
        """
        Args:
            client:
                Pre-built vendor client (openai.AsyncOpenAI-compatible).
                Built from gateway_url/token when omitted.
        """
        self._default_model = default_model
        self._owns_client = client is None
        self._client = client or openai.AsyncOpenAI(
            base_url=gateway_url.rstrip("/") + OPENAI_BASE_PATH,
            api_key=token or "unset",
            default_headers={AGENT_ID_HEADER: agent_id} if agent_id else None,
            max_retries=0,
        )

    async def complete(
        self,
        request: ChatRequest,
        cancel: CancelToken | None,
        *,
        timeout_s: float,
    ) -> ChatResponse:
        model = request.model or self._default_model
        messages = build_chat_messages(request.history, request.turn_input, request.system_prompt)

        log_event({
            "event_type": "chat_completion_fallback",
            "model": model,
            "messages": len(messages),
        })

        try:
            resp = await await_or_cancel(
                self._client.chat.completions.create(
                    model=model,
                    messages=messages,
                    stream=False,
                    timeout=timeout_s,
                ),
                cancel,
                timeout_s=timeout_s,
            )
        except openai.APITimeoutError as e:
            raise StreamTimeout(f"Timeout: {e}") from e
        except openai.APIConnectionError as e:
            raise StreamConnectionError(f"Connection error: {e}") from e
        except openai.APIStatusError as e:
            raise GatewayHTTPError(
                f"Gateway returned {e.status_code}: {e.message}",
                status=e.status_code,
                retry_after_s=parse_retry_after(e.response.headers.get("retry-after")),
            ) from e

        return ChatResponse(
            content=self._extract_content(resp),
            usage=self._extract_usage(resp),
            model=getattr(resp, "model", None) or None,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_content(resp: Any) -> str:
        """
        Extract message content from vendor response (OpenAI format).
        """
        try:
            return resp.choices[0].message.content or ""
        except (AttributeError, IndexError):
            return ""

    @staticmethod
    def _extract_usage(resp: Any) -> Usage | None:
        usage = getattr(resp, "usage", None)
        if usage is None:
            return None
        return Usage(
            prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        )
