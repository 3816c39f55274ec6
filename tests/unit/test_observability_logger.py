# pylint: disable=missing-module-docstring,missing-function-docstring

import json
from pathlib import Path
from typing import Any

import pytest

from observability import logger


def test_log_event_emits_valid_jsonl(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """
    Contract:
    - log_event emits exactly one JSONL line
    - payload fields are serialized as-is
    - ts_ms is filled in when the caller omits it
    - output sink is patchable
    """
    captured: list[str] = []

    def fake_print(line: str) -> None:
        captured.append(line)

    # Patch the explicit output sink used by logger
    monkeypatch.setattr(logger, "_print", fake_print)

    payload: dict[str, Any] = {
        "event_type": "TEST",
        "value": 123,
    }

    logger.log_event(payload)

    # Exactly one line emitted
    assert len(captured) == 1

    # Must be valid JSON
    decoded = json.loads(captured[0])

    assert decoded["event_type"] == "TEST"
    assert decoded["value"] == 123
    assert isinstance(decoded["ts_ms"], int)

    # Caller's mapping is not mutated
    assert "ts_ms" not in payload


def test_log_event_keeps_caller_timestamp(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[str] = []
    monkeypatch.setattr(logger, "_print", captured.append)

    logger.log_event({"event_type": "TEST", "ts_ms": 42})

    assert json.loads(captured[0])["ts_ms"] == 42


def test_unserializable_payload_falls_back(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[str] = []
    monkeypatch.setattr(logger, "_print", captured.append)

    logger.log_event({"event_type": "TEST", "bad": object()})

    decoded = json.loads(captured[0])
    assert decoded["event_type"] == "LOGGER_SERIALIZATION_ERROR"


def test_disabled_logger_writes_nothing(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[str] = []
    monkeypatch.setattr(logger, "_print", captured.append)
    monkeypatch.setattr(logger, "_enabled", False)

    logger.log_event({"event_type": "TEST"})

    assert captured == []


def test_sink_oserror_is_swallowed(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken(_line: str) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(logger, "_print", broken)

    logger.log_event({"event_type": "TEST"})


def test_configure_log_file_appends_lines(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    # Restore the original sink after the test
    monkeypatch.setattr(logger, "_print", logger._print)  # pylint: disable=protected-access

    path = tmp_path / "logs" / "events.jsonl"
    logger.configure_log_file(path)

    logger.log_event({"event_type": "A"})
    logger.log_event({"event_type": "B"})

    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["event_type"] for line in lines] == ["A", "B"]
