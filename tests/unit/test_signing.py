"""
Unit tests for payload encoding, signing and header construction.
"""

import json
from datetime import datetime, timezone

import pytest

from jobrelay.constants import HEADER_ATTEMPT, HEADER_EVENT, HEADER_SIGNATURE, HEADER_TIMESTAMP
from jobrelay.types.events import WebhookPayload
from jobrelay.webhooks.signing import (
    build_headers,
    encode_body,
    generate_secret,
    sign_payload,
    verify_signature,
)


class TestSignature:
    """Tests for HMAC signing and verification."""

    @pytest.mark.parametrize(
        "payload,secret",
        [
            ({"event": "job.completed", "data": {"jobId": "1"}}, "whsec_abc"),
            ({"unicode": "héllo ✓", "nested": {"list": [1, 2, 3]}}, "s"),
            ({}, "a-much-longer-secret-value-with-symbols-!@#$%"),
        ],
    )
    def test_verify_accepts_own_signature(self, payload: dict, secret: str):
        """Test that a signature verifies against the body it was computed over."""
        body = encode_body(payload)
        signature = sign_payload(body, secret)

        assert verify_signature(body, signature, secret) is True

    def test_mutating_one_byte_invalidates(self):
        """Test that changing a single byte of the body breaks the signature."""
        body = encode_body({"event": "job.completed", "data": {"jobId": "abc"}})
        signature = sign_payload(body, "secret")

        for index in range(len(body)):
            mutated = bytearray(body)
            mutated[index] ^= 0x01
            assert verify_signature(bytes(mutated), signature, "secret") is False

    def test_wrong_secret_rejected(self):
        body = encode_body({"a": 1})
        assert verify_signature(body, sign_payload(body, "one"), "two") is False

    def test_signature_is_hex_sha256(self):
        signature = sign_payload(b"{}", "secret")

        assert len(signature) == 64
        int(signature, 16)

    def test_garbage_signature_rejected(self):
        assert verify_signature(b"{}", "not-a-signature-é", "secret") is False


class TestEncoding:
    """Tests for the wire encoding."""

    def test_encode_body_is_compact(self):
        body = encode_body({"event": "x", "data": {"a": 1, "b": [1, 2]}})
        assert body == b'{"event":"x","data":{"a":1,"b":[1,2]}}'

    def test_payload_wire_format(self):
        """Test the payload envelope and its millisecond Z timestamp."""
        payload = WebhookPayload.for_job(
            event="job.completed",
            job_id="job-1",
            queue="emails",
            status="completed",
            application={"id": "acme", "name": "Acme"},
            result={"sent": True},
            error=None,
        )
        payload.timestamp = datetime(2024, 3, 1, 12, 30, 45, 123456, tzinfo=timezone.utc)

        wire = json.loads(encode_body(payload.to_wire()))

        assert wire == {
            "event": "job.completed",
            "timestamp": "2024-03-01T12:30:45.123Z",
            "data": {
                "jobId": "job-1",
                "queue": "emails",
                "status": "completed",
                "application": {"id": "acme", "name": "Acme"},
                "result": {"sent": True},
            },
        }

    def test_generate_secret(self):
        first = generate_secret()
        second = generate_secret()

        assert first.startswith("whsec_")
        assert len(first) > 40
        assert first != second


class TestBuildHeaders:
    """Tests for signed header construction."""

    def test_system_headers(self):
        body = b'{"a":1}'
        headers = build_headers(
            body=body,
            secret="secret",
            event="job.completed",
            timestamp="2024-01-01T00:00:00.000Z",
            attempt=2,
            user_agent="JobRelay-Webhooks/1.0",
        )

        assert headers["Content-Type"] == "application/json"
        assert headers["User-Agent"] == "JobRelay-Webhooks/1.0"
        assert headers[HEADER_EVENT] == "job.completed"
        assert headers[HEADER_TIMESTAMP] == "2024-01-01T00:00:00.000Z"
        assert headers[HEADER_ATTEMPT] == "2"
        assert headers[HEADER_SIGNATURE] == sign_payload(body, "secret")

    def test_custom_headers_cannot_override_system_headers(self):
        """Test that caller headers never replace signature or identification headers."""
        headers = build_headers(
            body=b"{}",
            secret="secret",
            event="job.completed",
            timestamp="t",
            attempt=1,
            user_agent="ua",
            custom={
                "x-webhook-signature": "forged",
                "content-type": "text/plain",
                "X-Job-Id": "forged",
                "X-Team": "payments",
            },
            extra={"X-Job-Id": "job-1"},
        )

        assert headers[HEADER_SIGNATURE] == sign_payload(b"{}", "secret")
        assert headers["X-Job-Id"] == "job-1"
        assert headers["X-Team"] == "payments"
        assert "x-webhook-signature" not in headers
        assert "content-type" not in headers

    def test_no_secret_no_signature(self):
        headers = build_headers(
            body=b"{}",
            secret=None,
            event="job.created",
            timestamp="t",
            attempt=1,
            user_agent="ua",
            custom={"X-Webhook-Signature": "forged"},
        )

        assert HEADER_SIGNATURE not in headers
