"""
SPEC-AS-CONSTANTS
-----------------
Single source of truth for all behavioral invariants in the client.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Other modules MUST import from this file.
"""

from __future__ import annotations

import re
from typing import Final, Tuple

# =============================================================================
# Gateway defaults
# =============================================================================

DEFAULT_GATEWAY_URL: Final[str] = "http://127.0.0.1:18789"
DEFAULT_AGENT_ID: Final[str] = "clawtalk"
DEFAULT_MODEL: Final[str] = "deepseek/deepseek-chat"
DEFAULT_DATA_DIR_NAME: Final[str] = ".clawtalk"

# Gateway HTTP paths
CHAT_COMPLETIONS_PATH: Final[str] = "/v1/chat/completions"
OPENAI_BASE_PATH: Final[str] = "/v1"
TALK_CHAT_PATH_TEMPLATE: Final[str] = "/api/talks/{talk_id}/chat"
TALK_PATH_TEMPLATE: Final[str] = "/api/talks/{talk_id}"
TALKS_PATH: Final[str] = "/api/talks"
HEALTH_PATH: Final[str] = "/health"
REALTIME_VOICE_PATH: Final[str] = "/api/voice/realtime"

# =============================================================================
# Network timeouts (seconds)
# =============================================================================

HEALTH_CHECK_TIMEOUT_S: Final[float] = 3.0
TALK_FETCH_TIMEOUT_S: Final[float] = 5.0
CHAT_TIMEOUT_S: Final[float] = 300.0
STREAM_IDLE_TIMEOUT_S: Final[float] = 120.0
VOICE_CONNECT_TIMEOUT_S: Final[float] = 10.0

# =============================================================================
# Context window
# =============================================================================

MAX_CONTEXT_MESSAGES: Final[int] = 50

# =============================================================================
# Stream hygiene (single backpressure control)
# =============================================================================

MAX_STREAM_BUFFER_BYTES: Final[int] = 64 * 1024
MAX_REALTIME_MESSAGE_BYTES: Final[int] = 1024 * 1024
STREAM_READ_CHUNK_BYTES: Final[int] = 8 * 1024

# =============================================================================
# Retry policy
# =============================================================================

# Retries per turn, excluding the initial attempt
TRANSIENT_MAX_RETRIES: Final[int] = 1

TRANSIENT_RETRY_DELAY_MS: Final[int] = 300
RATE_LIMIT_RETRY_AFTER_CAP_MS: Final[int] = 5_000

TRANSIENT_HTTP_STATUSES: Final[frozenset[int]] = frozenset({429, 500, 502, 503, 504, 529})
AUTH_HTTP_STATUSES: Final[frozenset[int]] = frozenset({401, 403})
MALFORMED_HTTP_STATUSES: Final[frozenset[int]] = frozenset({400, 404, 413, 422})

# Continuation instruction sent when partial content exists
RECOVERY_PROMPT: Final[str] = (
    "Your previous response was interrupted. Continue from where you left off."
)

# =============================================================================
# Gateway protocol
# =============================================================================

GATEWAY_SENTINELS: Final[Tuple[str, ...]] = (
    "NO_REPLY",
    "NO_REPL",
    "HEARTBEAT_OK",
    "HEARTBEAT",
)

# Whole-response prefixes the gateway uses when it returns an error as text
GATEWAY_ERROR_TEXT_RE: Final[re.Pattern[str]] = re.compile(
    r"^(Connection error|Error:|Failed to|Cannot connect|Timeout)",
    re.IGNORECASE,
)

# Raw error text that warrants re-probing the active model
REPROBE_STATUS_RE: Final[re.Pattern[str]] = re.compile(r"\b(40[1349]|429|5\d{2})\b")

NO_RESPONSE_MESSAGE: Final[str] = (
    "No response received from AI. The model may be unavailable "
    "or the connection was interrupted."
)

# =============================================================================
# Realtime voice
# =============================================================================

VOICE_SAMPLE_RATE_HZ: Final[int] = 16_000
VOICE_SAMPLE_WIDTH_BYTES: Final[int] = 2  # PCM16
VOICE_CHANNELS: Final[int] = 1

# Bounded AI playback buffer (seconds of PCM16 audio)
PLAYBACK_BUFFER_MAX_S: Final[float] = 60.0

# Outbound mic audio held while the AI is speaking (seconds)
OUTBOUND_HOLD_MAX_S: Final[float] = 30.0

REALTIME_PROVIDERS: Final[Tuple[str, ...]] = (
    "openai",
    "elevenlabs",
    "deepgram",
    "gemini",
    "cartesia",
)

# =============================================================================
# Gateway polling
# =============================================================================

GATEWAY_POLL_INTERVAL_S: Final[float] = 30.0

# =============================================================================
# Tool event previews (UI notices)
# =============================================================================

TOOL_ARGS_PREVIEW_CHARS: Final[int] = 100
TOOL_RESULT_PREVIEW_CHARS: Final[int] = 200


# =============================================================================
# Helper Functions
# =============================================================================

def is_gateway_sentinel(text: str) -> bool:
    """
    Return True if a response is a gateway sentinel (not real content).

    Blank text counts as a sentinel; callers that need to tell "empty"
    apart check for blank text first.
    """
    trimmed = text.strip()
    if not trimmed:
        return True
    return any(trimmed.startswith(s) for s in GATEWAY_SENTINELS)


def looks_like_gateway_error(text: str) -> bool:
    """Return True if a whole response is an error rendered as text."""
    return GATEWAY_ERROR_TEXT_RE.match(text.strip()) is not None


def pcm_bytes_to_seconds(num_bytes: int) -> float:
    """
    Duration of PCM16 mono audio at the voice sample rate.

    Non-positive input returns 0.0.
    """
    if num_bytes <= 0:
        return 0.0
    return num_bytes / (VOICE_SAMPLE_RATE_HZ * VOICE_SAMPLE_WIDTH_BYTES * VOICE_CHANNELS)
