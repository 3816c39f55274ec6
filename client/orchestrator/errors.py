"""
Client error taxonomy.

ErrorKind classifies *what* went wrong; the exception classes carry the
partial output produced before the failure so it is never lost.
Vendor exceptions (aiohttp, openai, websockets) are converted into this
hierarchy at the adapter boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """
    Failure classification used by the retry controller and the UI.

    TRANSIENT_NETWORK:
        Connection refused/reset, abrupt close, idle timeout.
        Retried once.

    PROVIDER_OVERLOAD_OR_RATE_LIMITED:
        HTTP 429/5xx (or the vendor equivalent).
        Retried once, honouring Retry-After up to a cap.

    AUTH_OR_PERMISSION / MALFORMED_REQUEST / PROVIDER_REJECTED:
        Fatal for the turn; surfaced as a system message.

    CANCELLED:
        User-initiated. Never retried, never shown as an error.

    SENTINEL_RESPONSE:
        Not an error: the gateway answered with a sentinel.
    """

    TRANSIENT_NETWORK = "transient_network"
    AUTH_OR_PERMISSION = "auth_or_permission"
    MALFORMED_REQUEST = "malformed_request"
    PROVIDER_OVERLOAD_OR_RATE_LIMITED = "provider_overload_or_rate_limited"
    PROVIDER_REJECTED = "provider_rejected"
    CANCELLED = "cancelled"
    SENTINEL_RESPONSE = "sentinel_response"


# ---------------------------------------------------------------------
# Stream errors
# ---------------------------------------------------------------------

class StreamError(Exception):
    """Base class for stream failures; carries any partial output."""

    def __init__(self, message: str, *, partial_content: str = "") -> None:
        super().__init__(message)
        self.partial_content = partial_content


class StreamConnectionError(StreamError):
    """Connection failed, was reset, or closed before the stream finished."""


class StreamTimeout(StreamError):
    """No data arrived within the idle/overall timeout budget."""


class StreamCancelled(StreamError):
    """The turn was cancelled by the user."""


class GatewayHTTPError(StreamError):
    """Gateway answered with a non-2xx status."""

    def __init__(
        self,
        message: str,
        *,
        status: int,
        retry_after_s: float | None = None,
        partial_content: str = "",
    ) -> None:
        super().__init__(message, partial_content=partial_content)
        self.status = status
        self.retry_after_s = retry_after_s


class GatewayStreamError(StreamError):
    """Gateway reported an error in-band, mid-stream."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        partial_content: str = "",
    ) -> None:
        super().__init__(message, partial_content=partial_content)
        self.status = status


# ---------------------------------------------------------------------
# Turn errors
# ---------------------------------------------------------------------

class TurnInFlightError(RuntimeError):
    """A turn is already streaming for this talk."""

    def __init__(self, talk_id: str) -> None:
        super().__init__(f"a turn is already in flight for talk {talk_id}")
        self.talk_id = talk_id


@dataclass(frozen=True)
class TurnError:
    """
    Terminal turn failure as reported to the caller.

    reprobe:
        True when the active model should be re-probed
        (auth, not-found, conflict, rate-limit or server errors).
    """
    kind: ErrorKind
    message: str
    reprobe: bool = False
