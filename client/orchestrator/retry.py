"""
Retry / recovery policy helpers.

Purpose:
- Classify stream failures into transient vs. fatal
- Decide whether the single per-turn retry is allowed
- Build the recovery request and merge its output with the partial text
- Map raw errors to user-facing text

This module contains NO timers, NO I/O, NO side effects.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum

import aiohttp
import openai

from orchestrator.errors import (
    ErrorKind,
    GatewayHTTPError,
    GatewayStreamError,
    StreamCancelled,
    StreamConnectionError,
    StreamTimeout,
)
from spec import (
    AUTH_HTTP_STATUSES,
    MALFORMED_HTTP_STATUSES,
    RATE_LIMIT_RETRY_AFTER_CAP_MS,
    RECOVERY_PROMPT,
    REPROBE_STATUS_RE,
    TRANSIENT_HTTP_STATUSES,
    TRANSIENT_MAX_RETRIES,
    TRANSIENT_RETRY_DELAY_MS,
)


# =============================================================================
# Classification
# =============================================================================

class Disposition(str, Enum):
    """
    Whether a failure may be retried.

    TRANSIENT:
        Network interruption, mid-stream termination, timeout,
        overload or rate limiting. Eligible for one recovery retry.

    FATAL:
        Auth, malformed request, provider rejection, cancellation.
        Never retried.
    """

    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class Classification:
    disposition: Disposition
    kind: ErrorKind
    retry_after_s: float | None = None

    @property
    def is_transient(self) -> bool:
        return self.disposition is Disposition.TRANSIENT


_TRANSIENT_MESSAGE_RE = re.compile(
    r"\bterminated\b|econnreset|econnrefused|socket hang up|network|"
    r"connection (?:reset|refused|closed)|timed? ?out|fetch failed",
    re.IGNORECASE,
)


def _transient(kind: ErrorKind, retry_after_s: float | None = None) -> Classification:
    return Classification(Disposition.TRANSIENT, kind, retry_after_s)


def _fatal(kind: ErrorKind) -> Classification:
    return Classification(Disposition.FATAL, kind)


def classify_status(status: int, retry_after_s: float | None = None) -> Classification:
    """Classify an HTTP status code."""
    if status in TRANSIENT_HTTP_STATUSES or 500 <= status < 600:
        return _transient(ErrorKind.PROVIDER_OVERLOAD_OR_RATE_LIMITED, retry_after_s)
    if status in AUTH_HTTP_STATUSES:
        return _fatal(ErrorKind.AUTH_OR_PERMISSION)
    if status in MALFORMED_HTTP_STATUSES:
        return _fatal(ErrorKind.MALFORMED_REQUEST)
    return _fatal(ErrorKind.PROVIDER_REJECTED)


def classify(error: BaseException) -> Classification:
    """
    Classify a failure raised while streaming a turn.

    Accepts the local StreamError hierarchy as well as raw vendor
    exceptions (aiohttp, openai) that escaped an adapter.
    """
    if isinstance(error, (StreamCancelled, asyncio.CancelledError)):
        return _fatal(ErrorKind.CANCELLED)

    if isinstance(error, GatewayHTTPError):
        return classify_status(error.status, error.retry_after_s)

    if isinstance(error, GatewayStreamError):
        if error.status is not None:
            return classify_status(error.status)
        if _TRANSIENT_MESSAGE_RE.search(str(error)):
            return _transient(ErrorKind.TRANSIENT_NETWORK)
        return _fatal(ErrorKind.PROVIDER_REJECTED)

    if isinstance(error, (StreamConnectionError, StreamTimeout)):
        return _transient(ErrorKind.TRANSIENT_NETWORK)

    # --- openai (non-streaming fallback) -------------------------------
    if isinstance(error, openai.APIConnectionError):
        # Includes APITimeoutError
        return _transient(ErrorKind.TRANSIENT_NETWORK)
    if isinstance(error, openai.APIStatusError):
        return classify_status(error.status_code, _openai_retry_after(error))

    # --- aiohttp -------------------------------------------------------
    if isinstance(error, aiohttp.ClientResponseError):
        return classify_status(error.status)
    if isinstance(error, (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError)):
        return _transient(ErrorKind.TRANSIENT_NETWORK)

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return _transient(ErrorKind.TRANSIENT_NETWORK)

    if _TRANSIENT_MESSAGE_RE.search(str(error)):
        return _transient(ErrorKind.TRANSIENT_NETWORK)

    return _fatal(ErrorKind.PROVIDER_REJECTED)


def _openai_retry_after(error: openai.APIStatusError) -> float | None:
    try:
        raw = error.response.headers.get("retry-after")
    except AttributeError:
        return None
    return parse_retry_after(raw)


def parse_retry_after(raw: str | None) -> float | None:
    """Parse a Retry-After header given in seconds; dates are ignored."""
    if raw is None:
        return None
    try:
        value = float(raw.strip())
    except ValueError:
        return None
    return value if value >= 0 else None


# =============================================================================
# Policy
# =============================================================================

def should_retry(classification: Classification, attempt: int) -> bool:
    """
    Returns True if a retry is allowed.

    attempt = number of retries already performed for this turn
    """
    if not classification.is_transient:
        return False
    return attempt < TRANSIENT_MAX_RETRIES


def get_retry_delay_ms(classification: Classification) -> int:
    """
    Delay before the retry.

    Rate limits honour the server's Retry-After, capped; everything
    else uses the fixed short delay.
    """
    if (
        classification.kind is ErrorKind.PROVIDER_OVERLOAD_OR_RATE_LIMITED
        and classification.retry_after_s is not None
    ):
        return min(int(classification.retry_after_s * 1000), RATE_LIMIT_RETRY_AFTER_CAP_MS)
    return TRANSIENT_RETRY_DELAY_MS


# =============================================================================
# Recovery
# =============================================================================

@dataclass(frozen=True)
class RecoveryPlan:
    """
    Request to send for the retry.

    recovery=True tells the gateway the text is a continuation
    instruction rather than a new user message.
    """
    text: str
    recovery: bool


def plan_recovery(original_input: str, partial: str) -> RecoveryPlan:
    if partial:
        return RecoveryPlan(text=RECOVERY_PROMPT, recovery=True)
    return RecoveryPlan(text=original_input, recovery=False)


def merge_recovered(partial: str, resumed: str) -> str:
    """Final content after a recovery: concatenated verbatim."""
    return partial + resumed


# =============================================================================
# User-facing text
# =============================================================================

_INTERRUPTED_RE = re.compile(r"\bterminated\b|aborted|abort", re.IGNORECASE)
_CONNECTION_RE = re.compile(
    r"fetch failed|network error|connection refused|econnrefused|cannot connect",
    re.IGNORECASE,
)
_TIMEOUT_RE = re.compile(r"timeout|timed out", re.IGNORECASE)


def friendly_error_message(raw: str) -> str:
    if _INTERRUPTED_RE.search(raw):
        return "Request was interrupted. Please try again."
    if _CONNECTION_RE.search(raw):
        return "Connection failed. Please check your network and gateway status."
    if _TIMEOUT_RE.search(raw):
        return "Request timed out. The model may be overloaded or unavailable."
    return raw


def should_reprobe_model(error: BaseException | str) -> bool:
    """True when the active model should be re-probed (401/403/404/409/429/5xx)."""
    status = getattr(error, "status", None)
    if status is None:
        status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status in (401, 403, 404, 409, 429) or 500 <= status < 600
    return REPROBE_STATUS_RE.search(str(error)) is not None
