"""
JSONL event logger.

- Write one JSON object per line
- Output to stderr by default (stdout belongs to the REPL)
- No buffering, no batching
- No side effects beyond logging
"""

from __future__ import annotations

import json
import sys
import time
from pathlib import Path
from typing import Any, Mapping, Callable


# ------------------------------------------------------------------
# Explicit output sink (patchable in tests, swappable at startup)
# ------------------------------------------------------------------

def _stderr_print(line: str) -> None:
    sys.stderr.write(line + "\n")
    sys.stderr.flush()

_print: Callable[[str], None] = _stderr_print

_enabled: bool = True


def configure_log_file(path: Path) -> None:
    """Redirect the event log to an append-only file."""
    global _print  # pylint: disable=global-statement

    path.parent.mkdir(parents=True, exist_ok=True)

    def _file_print(line: str) -> None:
        with path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    _print = _file_print


def set_enabled(enabled: bool) -> None:
    """Turn event logging on or off (ENABLE_JSON_LOGS)."""
    global _enabled  # pylint: disable=global-statement
    _enabled = enabled


def log_event(event: Mapping[str, Any]) -> None:
    """
    Write a single JSONL event.

    The caller supplies event_type and any correlation ids
    (talk_id, session_id). ts_ms is filled in when missing.

    This function:
    - Serializes to JSON
    - Writes exactly one line
    - Never raises
    """
    if not _enabled:
        return

    payload: dict[str, Any] = dict(event)
    payload.setdefault("ts_ms", time.time_ns() // 1_000_000)

    try:
        line = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        # Last-resort fallback: logging must never crash the client
        fallback: dict[str, Any] = {
            "ts_ms": payload.get("ts_ms"),
            "event_type": "LOGGER_SERIALIZATION_ERROR",
            "error": str(e),
            "original_event_repr": repr(event),
        }
        line = json.dumps(fallback, ensure_ascii=False, separators=(",", ":"))

    try:
        _print(line)
    except OSError:
        pass
