"""
Gateway streaming chat transport (aiohttp + server-sent events).

Direct mode:
    POST {gateway}/v1/chat/completions   (OpenAI-compatible, stream=true)

Talk mode (gateway_talk_id set):
    POST {gateway}/api/talks/{id}/chat   {"message", "recovery"?, "image"?}
    The gateway owns the talk history.

The transport is a dumb pipe: it never retries, never persists, and
converts aiohttp failures into the local StreamError hierarchy.
"""
from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import aiohttp

from adapters.llm.base import ChatRequest, ChatTransport, TokenStream
from adapters.llm.prompts import build_chat_messages
from observability.logger import log_event
from orchestrator.cancellation import CancelToken, await_or_cancel
from orchestrator.errors import (
    GatewayHTTPError,
    GatewayStreamError,
    StreamCancelled,
    StreamConnectionError,
    StreamError,
    StreamTimeout,
)
from orchestrator.retry import parse_retry_after
from protocol.frames import (
    ContentChunk,
    DoneFrame,
    ErrorFrame,
    FrameTooLarge,
    MalformedFrame,
    SSEDecoder,
    StreamChunk,
    ToolEndChunk,
    ToolStartChunk,
    Usage,
    UsageFrame,
    decode_stream_frame,
)
from spec import (
    CHAT_COMPLETIONS_PATH,
    STREAM_IDLE_TIMEOUT_S,
    STREAM_READ_CHUNK_BYTES,
    TALK_CHAT_PATH_TEMPLATE,
)


AGENT_ID_HEADER = "x-openclaw-agent-id"

_ERROR_BODY_PREVIEW_CHARS = 500


def build_headers(token: str | None, agent_id: str | None) -> dict[str, str]:
    headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    if agent_id:
        headers[AGENT_ID_HEADER] = agent_id
    return headers


class GatewayStreamTransport(ChatTransport):
    """
    Concrete streaming transport.

    Design notes:
    - One transport instance serves every turn of the process.
    - The aiohttp ClientSession is injected or created lazily and owned.
    - Each open() returns an independent, single-use TokenStream.
    """

    def __init__(
        self,
        *,
        gateway_url: str,
        token: str | None,
        agent_id: str | None = None,
        http: aiohttp.ClientSession | None = None,
        idle_timeout_s: float = STREAM_IDLE_TIMEOUT_S,
    ) -> None:
        self._gateway_url = gateway_url.rstrip("/")
        self._token = token
        self._agent_id = agent_id
        self._http = http
        self._owns_http = http is None
        self._idle_timeout_s = idle_timeout_s

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def open(
        self,
        request: ChatRequest,
        cancel: CancelToken | None,
        *,
        timeout_s: float,
    ) -> TokenStream:
        url, body = self._build(request)
        http = self._session()

        log_event({
            "event_type": "chat_stream_open",
            "mode": "talk" if request.gateway_talk_id else "direct",
            "gateway_talk_id": request.gateway_talk_id,
            "recovery": request.recovery,
            "model": request.model,
        })

        try:
            response = await await_or_cancel(
                http.post(
                    url,
                    json=body,
                    headers=build_headers(self._token, self._agent_id),
                    timeout=aiohttp.ClientTimeout(total=timeout_s),
                ),
                cancel,
                timeout_s=timeout_s,
            )
        except (StreamCancelled, StreamTimeout):
            raise
        except asyncio.TimeoutError as e:
            raise StreamTimeout(f"Timeout connecting to gateway: {e}") from e
        except aiohttp.ClientError as e:
            raise StreamConnectionError(f"Cannot connect to gateway: {e}") from e

        if response.status >= 400:
            await _raise_for_status(response)

        return SSETokenStream(
            response,
            cancel,
            idle_timeout_s=self._idle_timeout_s,
            gateway_talk_id=request.gateway_talk_id,
        )

    async def close(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None:
            self._http = aiohttp.ClientSession()
        return self._http

    def _build(self, request: ChatRequest) -> tuple[str, dict[str, Any]]:
        if request.gateway_talk_id:
            url = self._gateway_url + TALK_CHAT_PATH_TEMPLATE.format(talk_id=request.gateway_talk_id)
            body: dict[str, Any] = {"message": request.turn_input}
            if request.recovery:
                body["recovery"] = True
            if request.image is not None:
                body["image"] = {"base64": request.image.base64, "mimeType": request.image.mime_type}
            if request.model:
                body["model"] = request.model
            return url, body

        url = self._gateway_url + CHAT_COMPLETIONS_PATH
        body = {
            "messages": build_chat_messages(request.history, request.turn_input, request.system_prompt),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.model:
            body["model"] = request.model
        return url, body


async def _raise_for_status(response: aiohttp.ClientResponse) -> None:
    try:
        text = (await response.text())[:_ERROR_BODY_PREVIEW_CHARS]
    except (aiohttp.ClientError, UnicodeDecodeError):
        text = ""
    finally:
        response.release()

    retry_after = parse_retry_after(response.headers.get("Retry-After"))
    raise GatewayHTTPError(
        f"Gateway returned {response.status}: {text or response.reason}",
        status=response.status,
        retry_after_s=retry_after,
    )


class SSETokenStream(TokenStream):
    """
    TokenStream over one streaming HTTP response.

    Guarantees:
    - Chunks are yielded in arrival order
    - Malformed or oversized frames are logged and dropped
    - Every failure carries the content yielded so far
    - The response is released on completion, failure or cancellation
    """

    def __init__(
        self,
        response: aiohttp.ClientResponse,
        cancel: CancelToken | None,
        *,
        idle_timeout_s: float = STREAM_IDLE_TIMEOUT_S,
        gateway_talk_id: str | None = None,
    ) -> None:
        self._response = response
        self._cancel = cancel
        self._idle_timeout_s = idle_timeout_s
        self._gateway_talk_id = gateway_talk_id

        self._decoder = SSEDecoder()
        self._parts: list[str] = []
        self._usage: Usage | None = None
        self._model: str | None = None
        self._consumed = False
        self._done = False
        self._closed = False

    @property
    def partial_text(self) -> str:
        return "".join(self._parts)

    @property
    def usage(self) -> Usage | None:
        return self._usage

    @property
    def model(self) -> str | None:
        return self._model

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        if self._consumed:
            raise RuntimeError("TokenStream can only be consumed once")
        self._consumed = True
        return self._iterate()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.close()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _iterate(self) -> AsyncIterator[StreamChunk]:
        try:
            while not self._done:
                data = await self._read()
                if not data:
                    # Clean EOF without an end marker still ends the turn
                    payloads = self._decoder.flush()
                    self._done = True
                else:
                    try:
                        payloads = self._decoder.feed(data)
                    except FrameTooLarge as e:
                        self._log_dropped("stream_frame_too_large", str(e))
                        continue

                for payload in payloads:
                    chunk = self._handle(payload)
                    if chunk is not None:
                        yield chunk
                    if self._done:
                        break
        finally:
            await self.aclose()

    async def _read(self) -> bytes:
        try:
            return await await_or_cancel(
                self._response.content.read(STREAM_READ_CHUNK_BYTES),
                self._cancel,
                timeout_s=self._idle_timeout_s,
                partial_content=self.partial_text,
            )
        except StreamError:
            raise
        except asyncio.TimeoutError as e:
            raise StreamTimeout("Timeout while streaming", partial_content=self.partial_text) from e
        except (aiohttp.ClientPayloadError, aiohttp.ClientConnectionError) as e:
            raise StreamConnectionError(
                f"Connection error: stream terminated ({type(e).__name__}: {e})",
                partial_content=self.partial_text,
            ) from e

    def _handle(self, payload: str) -> StreamChunk | None:
        try:
            frame = decode_stream_frame(payload)
        except MalformedFrame as e:
            self._log_dropped("stream_frame_malformed", str(e))
            return None

        if isinstance(frame, ContentChunk):
            self._parts.append(frame.text)
            return frame
        if isinstance(frame, (ToolStartChunk, ToolEndChunk)):
            return frame
        if isinstance(frame, UsageFrame):
            if frame.usage is not None:
                self._usage = frame.usage
            if frame.model:
                self._model = frame.model
            return None
        if isinstance(frame, ErrorFrame):
            raise GatewayStreamError(
                frame.message,
                status=frame.status,
                partial_content=self.partial_text,
            )
        if isinstance(frame, DoneFrame):
            self._done = True
        return None

    def _log_dropped(self, event_type: str, error: str) -> None:
        log_event({
            "event_type": event_type,
            "gateway_talk_id": self._gateway_talk_id,
            "error": error,
            "partial_chars": len(self.partial_text),
        })
