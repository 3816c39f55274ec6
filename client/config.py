"""
Application configuration.

Responsibilities:
- Resolve gateway/client settings from CLI flags, environment and the
  (read-only) config file
- Validate the gateway URL
- Provide a typed, immutable config object

Non-responsibilities:
- No config file writing
- No protocol constants
- No runtime mutation
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

from observability.logger import log_event
from spec import DEFAULT_AGENT_ID, DEFAULT_DATA_DIR_NAME, DEFAULT_GATEWAY_URL, DEFAULT_MODEL


def default_data_dir() -> Path:
    return Path(os.environ.get("HOME", "~")).expanduser() / DEFAULT_DATA_DIR_NAME


@dataclass(frozen=True)
class UrlCheck:
    """Result of gateway URL validation."""
    ok: bool
    error: str | None = None
    warnings: tuple[str, ...] = ()


def validate_gateway_url(url: str) -> UrlCheck:
    """
    Validate that a gateway URL is a well-formed HTTP(S) URL.

    Plain HTTP to a non-loopback host is allowed but produces a warning,
    since the bearer token would travel in plaintext.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return UrlCheck(ok=False, error=f'Invalid gateway URL: "{url}". Must be a valid HTTP(S) URL.')

    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return UrlCheck(
            ok=False,
            error=f'Gateway URL must use http:// or https:// (got "{url}")',
        )

    warnings: list[str] = []
    is_loopback = parsed.hostname in ("localhost", "127.0.0.1", "::1")
    if parsed.scheme == "http" and not is_loopback:
        warnings.append(
            f"Gateway URL uses HTTP on non-localhost address ({parsed.hostname}). "
            "Auth tokens will be sent in plaintext."
        )
    return UrlCheck(ok=True, warnings=tuple(warnings))


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable client configuration.

    Constructed once at process startup and passed downward to
    ClientSession (the only place that builds transports/stores).
    """

    # ------------------------------------------------------------------
    # Gateway
    # ------------------------------------------------------------------

    gateway_url: str = DEFAULT_GATEWAY_URL
    gateway_token: str | None = None
    agent_id: str = DEFAULT_AGENT_ID

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    default_model: str = DEFAULT_MODEL

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    data_dir: Path = field(default_factory=default_data_dir)

    # ------------------------------------------------------------------
    # Voice
    # ------------------------------------------------------------------

    voice_provider: str | None = None
    voice_name: str | None = None

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    log_level: str = "INFO"
    enable_json_logs: bool = True

    @property
    def talks_dir(self) -> Path:
        return self.data_dir / "talks"

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """Load configuration from environment variables only."""
        return resolve_config({}, environ=os.environ, file_config={})


def load_config_file(path: Path) -> dict[str, Any]:
    """
    Read the JSON config file.

    Missing or unreadable files yield an empty mapping; the failure is
    logged, never raised.
    """
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        log_event({
            "event_type": "config_file_unreadable",
            "path": str(path),
            "error": str(exc),
        })
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def resolve_config(
    flags: Mapping[str, Any],
    *,
    environ: Mapping[str, str] | None = None,
    file_config: Mapping[str, Any] | None = None,
) -> AppConfig:
    """
    Resolve configuration: CLI flags > env vars > config file > defaults.

    flags keys: gateway, token, model, data_dir.
    """
    env = os.environ if environ is None else environ

    data_dir = Path(
        flags.get("data_dir")
        or env.get("CLAWTALK_DATA_DIR")
        or default_data_dir()
    ).expanduser()

    if file_config is None:
        file_config = load_config_file(data_dir / "config.json")

    gateway_url = (
        flags.get("gateway")
        or env.get("CLAWTALK_GATEWAY_URL")
        or file_config.get("gatewayUrl")
        or DEFAULT_GATEWAY_URL
    )

    check = validate_gateway_url(gateway_url)
    if not check.ok:
        log_event({
            "event_type": "config_invalid_gateway_url",
            "error": check.error,
        })

    voice = file_config.get("voice") or {}

    return AppConfig(
        gateway_url=gateway_url.rstrip("/"),
        gateway_token=(
            flags.get("token")
            or env.get("CLAWTALK_GATEWAY_TOKEN")
            or file_config.get("gatewayToken")
        ),
        agent_id=file_config.get("agentId") or DEFAULT_AGENT_ID,
        default_model=(
            flags.get("model")
            or env.get("CLAWTALK_MODEL")
            or file_config.get("defaultModel")
            or DEFAULT_MODEL
        ),
        data_dir=data_dir,
        voice_provider=voice.get("provider") if isinstance(voice, dict) else None,
        voice_name=voice.get("ttsVoice") if isinstance(voice, dict) else None,
        log_level=env.get("LOG_LEVEL", "INFO"),
        enable_json_logs=env.get("ENABLE_JSON_LOGS", "1") == "1",
    )
