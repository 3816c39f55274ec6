# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio

import pytest

from orchestrator.errors import (
    ErrorKind,
    GatewayHTTPError,
    GatewayStreamError,
    StreamCancelled,
    StreamConnectionError,
    StreamTimeout,
)
from orchestrator.retry import (
    classify,
    classify_status,
    friendly_error_message,
    get_retry_delay_ms,
    merge_recovered,
    parse_retry_after,
    plan_recovery,
    should_reprobe_model,
    should_retry,
)
from spec import (
    RATE_LIMIT_RETRY_AFTER_CAP_MS,
    RECOVERY_PROMPT,
    TRANSIENT_RETRY_DELAY_MS,
)


# ---------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------

@pytest.mark.parametrize("status,kind,transient", [
    (429, ErrorKind.PROVIDER_OVERLOAD_OR_RATE_LIMITED, True),
    (503, ErrorKind.PROVIDER_OVERLOAD_OR_RATE_LIMITED, True),
    (599, ErrorKind.PROVIDER_OVERLOAD_OR_RATE_LIMITED, True),
    (401, ErrorKind.AUTH_OR_PERMISSION, False),
    (403, ErrorKind.AUTH_OR_PERMISSION, False),
    (400, ErrorKind.MALFORMED_REQUEST, False),
    (404, ErrorKind.MALFORMED_REQUEST, False),
    (409, ErrorKind.PROVIDER_REJECTED, False),
])
def test_classify_status(status: int, kind: ErrorKind, transient: bool):
    c = classify_status(status)
    assert c.kind is kind
    assert c.is_transient is transient


def test_network_failures_are_transient():
    assert classify(StreamConnectionError("reset")).is_transient
    assert classify(StreamTimeout("idle")).is_transient
    assert classify(ConnectionResetError()).is_transient
    assert classify(asyncio.TimeoutError()).is_transient


def test_cancellation_is_never_retried():
    for err in (StreamCancelled("user"), asyncio.CancelledError()):
        c = classify(err)
        assert c.kind is ErrorKind.CANCELLED
        assert not should_retry(c, 0)


def test_http_error_keeps_retry_after():
    c = classify(GatewayHTTPError("slow down", status=429, retry_after_s=2.0))
    assert c.is_transient
    assert c.retry_after_s == 2.0


def test_in_band_stream_errors():
    assert classify(GatewayStreamError("overloaded", status=529)).is_transient
    assert classify(GatewayStreamError("upstream terminated")).is_transient
    assert classify(GatewayStreamError("content policy")).kind is ErrorKind.PROVIDER_REJECTED


def test_unknown_errors_fall_back_to_message():
    assert classify(RuntimeError("socket hang up")).is_transient
    assert not classify(RuntimeError("bad things")).is_transient


# ---------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------

def test_single_retry_budget():
    c = classify(StreamConnectionError("reset"))
    assert should_retry(c, 0)
    assert not should_retry(c, 1)


def test_fatal_errors_never_retry():
    assert not should_retry(classify_status(401), 0)


def test_retry_delay():
    assert get_retry_delay_ms(classify(StreamTimeout("x"))) == TRANSIENT_RETRY_DELAY_MS
    assert get_retry_delay_ms(classify_status(429, 1.5)) == 1500
    assert get_retry_delay_ms(classify_status(429, 3600)) == RATE_LIMIT_RETRY_AFTER_CAP_MS


def test_parse_retry_after():
    assert parse_retry_after("3") == 3.0
    assert parse_retry_after(" 0.5 ") == 0.5
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
    assert parse_retry_after("-1") is None
    assert parse_retry_after(None) is None


# ---------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------

def test_recovery_with_partial_sends_continuation():
    plan = plan_recovery("tell me a story", "Once upon")
    assert plan.recovery is True
    assert plan.text == RECOVERY_PROMPT


def test_recovery_without_partial_resends_input():
    plan = plan_recovery("tell me a story", "")
    assert plan.recovery is False
    assert plan.text == "tell me a story"


def test_merge_recovered_concatenates_verbatim():
    assert merge_recovered("Once upon", " a time") == "Once upon a time"


# ---------------------------------------------------------------------
# User-facing text
# ---------------------------------------------------------------------

def test_friendly_error_messages():
    assert friendly_error_message("stream terminated").startswith("Request was interrupted")
    assert friendly_error_message("fetch failed").startswith("Connection failed")
    assert friendly_error_message("Timeout after 30s").startswith("Request timed out")
    assert friendly_error_message("quota exceeded") == "quota exceeded"


def test_should_reprobe_model():
    assert should_reprobe_model(GatewayHTTPError("x", status=404))
    assert should_reprobe_model(GatewayHTTPError("x", status=502))
    assert not should_reprobe_model(GatewayHTTPError("x", status=400))
    assert should_reprobe_model("Gateway returned 429")
    assert not should_reprobe_model("connection reset")
