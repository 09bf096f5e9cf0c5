"""
Unit tests for the logging processors.
"""

import structlog

from jobrelay.observability.logging import REDACTED, log_context, redact_secrets


class TestRedactSecrets:
    """Tests for the redact_secrets processor."""

    def test_top_level_fields(self):
        event = redact_secrets(None, "info", {"event": "Registered", "secret": "whsec_abc", "url": "https://a"})

        assert event == {"event": "Registered", "secret": REDACTED, "url": "https://a"}

    def test_nested_headers(self):
        event = redact_secrets(
            None,
            "info",
            {"event": "Calling", "headers": {"Authorization": "Bearer t", "X-Team": "ops"}},
        )

        assert event["headers"] == {"Authorization": REDACTED, "X-Team": "ops"}


class TestLogContext:
    """Tests for log_context."""

    def test_binds_and_restores(self):
        structlog.contextvars.clear_contextvars()

        with log_context(schedule_id="s-1"):
            assert structlog.contextvars.get_contextvars() == {"schedule_id": "s-1"}
            with log_context(execution_id="e-1"):
                assert structlog.contextvars.get_contextvars() == {
                    "schedule_id": "s-1",
                    "execution_id": "e-1",
                }

        assert structlog.contextvars.get_contextvars() == {}
