"""Unit tests for the structured logging configuration.

Verifies that ``configure_logging()`` produces well-formed output, that the
``request_id_var`` context variable is propagated, and that credentials
never reach the rendered records.
"""

from __future__ import annotations

import json
import logging
from io import StringIO
from typing import Any, Callable

import structlog

from key_relay.core.logging_config import configure_logging, request_id_var


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _capture(log_level: str, emit: Callable[[], None]) -> list[dict[str, Any]]:
    """Run ``emit`` with the root handler redirected and return parsed records.

    Args:
        log_level: Logging level string passed to ``configure_logging``.
        emit: Callable that emits the records under test.

    Returns:
        Every JSON record written while ``emit`` ran.
    """
    configure_logging(log_level)

    buffer = StringIO()
    root = logging.getLogger()
    original_streams = []
    for handler in root.handlers:
        if hasattr(handler, "stream"):
            original_streams.append((handler, handler.stream))
            handler.stream = buffer
    try:
        emit()
    finally:
        for handler, stream in original_streams:
            handler.flush()
            handler.stream = stream

    return [json.loads(line) for line in buffer.getvalue().splitlines() if line.strip()]


def _find(records: list[dict[str, Any]], event: str) -> dict[str, Any]:
    target = next((r for r in records if r.get("event") == event), None)
    assert target is not None, f"No record with event={event!r} in {records!r}"
    return target


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestConfigureLoggingJson:
    """Verify INFO-level (production) JSON output."""

    def test_stdlib_records_are_json(self) -> None:
        """Records from plain ``logging`` loggers go through the same renderer."""
        records = _capture(
            "INFO", lambda: logging.getLogger("test.stdlib").info("stdlib_message")
        )

        target = _find(records, "stdlib_message")
        assert target["level"] == "info"
        assert target["logger"] == "test.stdlib"
        assert "timestamp" in target

    def test_structlog_fields_are_rendered(self) -> None:
        records = _capture(
            "INFO",
            lambda: structlog.get_logger("test.structlog").info(
                "slot_deprecated", slot=3, active=4
            ),
        )

        target = _find(records, "slot_deprecated")
        assert target["slot"] == 3
        assert target["active"] == 4

    def test_debug_records_are_dropped_at_info(self) -> None:
        records = _capture(
            "INFO", lambda: structlog.get_logger("test.level").debug("too_chatty")
        )

        assert all(r.get("event") != "too_chatty" for r in records)

    def test_reconfiguring_does_not_stack_handlers(self) -> None:
        configure_logging("INFO")
        configure_logging("WARNING")

        assert len(logging.getLogger().handlers) == 1


class TestRequestIdPropagation:
    def test_request_id_is_injected(self) -> None:
        """A request ID set by the middleware appears on every record."""
        token = request_id_var.set("req-123")
        try:
            records = _capture(
                "INFO", lambda: structlog.get_logger("test.rid").info("with_request_id")
            )
        finally:
            request_id_var.reset(token)

        assert _find(records, "with_request_id")["request_id"] == "req-123"

    def test_no_request_id_outside_requests(self) -> None:
        records = _capture(
            "INFO", lambda: structlog.get_logger("test.rid").info("without_request_id")
        )

        assert "request_id" not in _find(records, "without_request_id")


class TestSecretRedaction:
    def test_secret_named_fields_are_redacted(self) -> None:
        records = _capture(
            "INFO",
            lambda: structlog.get_logger("test.redact").info(
                "credential_check", token="hf_secret", api_key="hf_other", slot=1
            ),
        )

        target = _find(records, "credential_check")
        assert target["token"] == "[REDACTED]"
        assert target["api_key"] == "[REDACTED]"
        assert target["slot"] == 1

    def test_nested_header_values_are_redacted(self) -> None:
        records = _capture(
            "INFO",
            lambda: structlog.get_logger("test.redact").info(
                "outbound", headers={"Authorization": "Bearer hf_secret", "Accept": "*/*"}
            ),
        )

        headers = _find(records, "outbound")["headers"]
        assert headers["Authorization"] == "[REDACTED]"
        assert headers["Accept"] == "*/*"

    def test_bearer_fragments_in_messages_are_masked(self) -> None:
        """Stringified upstream errors must not leak the credential."""
        records = _capture(
            "INFO",
            lambda: structlog.get_logger("test.redact").warning(
                "upstream_transport_error", error="refused for 'Bearer hf_secret' at host"
            ),
        )

        error = _find(records, "upstream_transport_error")["error"]
        assert "hf_secret" not in error
        assert "Bearer [REDACTED]" in error
