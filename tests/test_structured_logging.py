"""
Tests for structured logging infrastructure.

Tests:
- JSON and console output
- Request context propagation
- Redaction of secrets, signatures and emails
- Stdlib extra={...} records share the structlog chain
"""

import asyncio
import json
import logging

import pytest

from minuteledger.observability.logging import (
    REDACTED,
    RequestContext,
    configure_logging,
    get_logger,
    get_request_id,
    get_trace_id,
    get_user_id,
    redact_sensitive_fields,
    set_user_id,
)


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    # Rebind the handler to the session stream once capsys has been torn down
    configure_logging(log_level="INFO", json_output=False)


def json_lines(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


def test_configure_logging_console_output():
    configure_logging(log_level="INFO", json_output=False, colorized=False)

    logger = get_logger("test")
    logger.info("Test message", test_field="value")


def test_json_output_includes_service_metadata(capsys):
    configure_logging(log_level="INFO", json_output=True, environment="staging")

    get_logger("test").info("Usage tracked", minutes_added=2)

    events = json_lines(capsys.readouterr().out)
    event = next(e for e in events if e["event"] == "Usage tracked")
    assert event["minutes_added"] == 2
    assert event["service"] == "minute-ledger"
    assert event["environment"] == "staging"
    assert event["level"] == "info"
    assert event["timestamp"].endswith("Z")


def test_request_context_is_injected(capsys):
    configure_logging(log_level="INFO", json_output=True)

    with RequestContext(user_id="user_42", request_id="req_123", trace_id="trace_abc"):
        get_logger("test").info("Processing request")

    event = next(e for e in json_lines(capsys.readouterr().out) if e["event"] == "Processing request")
    assert event["request_id"] == "req_123"
    assert event["trace_id"] == "trace_abc"
    assert event["user_id"] == "user_42"


def test_secrets_are_redacted_in_output(capsys):
    configure_logging(log_level="INFO", json_output=True)

    get_logger("test").warning(
        "Webhook rejected",
        webhook_secret="whsec_do_not_log",
        stripe_signature="t=1,v1=deadbeef",
        email="owner@users.io",
    )

    output = capsys.readouterr().out
    assert "whsec_do_not_log" not in output
    assert "deadbeef" not in output
    event = next(e for e in json_lines(output) if e["event"] == "Webhook rejected")
    assert event["webhook_secret"] == REDACTED
    assert event["stripe_signature"] == REDACTED
    assert event["email"] == "***@users.io"


def test_stdlib_extra_fields_are_structured_and_redacted(capsys):
    configure_logging(log_level="INFO", json_output=True)

    logging.getLogger("minuteledger.test").warning(
        "Lookup failed",
        extra={"stripe_customer_id": "cus_1", "api_key": "sk_live_do_not_log"},
    )

    output = capsys.readouterr().out
    assert "sk_live_do_not_log" not in output
    event = next(e for e in json_lines(output) if e["event"] == "Lookup failed")
    assert event["stripe_customer_id"] == "cus_1"
    assert event["api_key"] == REDACTED
    assert event["logger"] == "minuteledger.test"


@pytest.mark.parametrize(
    "key", ["api_key", "password", "authorization", "secret", "signature", "token", "client_secret"]
)
def test_redact_sensitive_fields(key):
    event = redact_sensitive_fields(None, "info", {"event": "x", key: "value"})
    assert event[key] == REDACTED


def test_redaction_keeps_other_fields():
    event = redact_sensitive_fields(None, "info", {"event": "x", "user_id": "user_1", "secret": None})
    assert event["user_id"] == "user_1"
    assert event["secret"] is None


def test_request_context_auto_generation():
    with RequestContext(user_id="user_1"):
        assert get_request_id().startswith("req_")
        assert get_trace_id().startswith("trace_")

    assert get_request_id() is None
    assert get_user_id() is None


def test_set_user_id_does_not_leak_out_of_request():
    with RequestContext():
        set_user_id("user_inner")
        assert get_user_id() == "user_inner"

    assert get_user_id() is None


def test_nested_request_contexts():
    with RequestContext(user_id="user_1", request_id="req1"):
        with RequestContext(user_id="user_2", request_id="req2"):
            assert get_user_id() == "user_2"
            assert get_request_id() == "req2"

        assert get_user_id() == "user_1"
        assert get_request_id() == "req1"


def test_request_context_in_async_code():
    async def async_operation():
        assert get_request_id() == "req_async"
        assert get_user_id() == "user_async"

    with RequestContext(user_id="user_async", request_id="req_async"):
        asyncio.run(async_operation())


def test_exception_logging(capsys):
    configure_logging(log_level="INFO", json_output=True)

    try:
        raise ValueError("Test exception")
    except ValueError:
        get_logger("test").error("Operation failed", exc_info=True)

    event = next(e for e in json_lines(capsys.readouterr().out) if e["event"] == "Operation failed")
    assert event["exception_type"] == "ValueError"
    assert event["exception_message"] == "Test exception"


def test_completion_routes_get_probe_allowance():
    from minuteledger.observability.logging_middleware import SlowRequestLogger

    middleware = SlowRequestLogger(
        app=None, warning_threshold_ms=250.0, error_threshold_ms=1000.0, probe_allowance_ms=5000.0
    )

    assert middleware.thresholds_for("/api/v1/uploads/abc/complete") == (5250.0, 6000.0)
    assert middleware.thresholds_for("/api/v1/uploads") == (250.0, 1000.0)
