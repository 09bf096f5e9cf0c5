"""
Payload encoding, HMAC signing and signed header construction.
"""

import base64
import hashlib
import hmac
import json
import secrets
from collections.abc import Mapping
from typing import Any

from jobrelay.constants import (
    HEADER_ATTEMPT,
    HEADER_EVENT,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    WEBHOOK_SECRET_PREFIX,
)


def encode_body(payload: Mapping[str, Any]) -> bytes:
    """Compact JSON encoding. The signature is computed over exactly these bytes."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode(
        "utf-8"
    )


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """Constant-time check of a received signature."""
    expected = sign_payload(body, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("ascii", "ignore"))


def generate_secret() -> str:
    """A fresh ``whsec_`` prefixed signing secret (32 random bytes, base64url)."""
    token = base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")
    return f"{WEBHOOK_SECRET_PREFIX}{token}"


def build_headers(
    *,
    body: bytes,
    secret: str | None,
    event: str,
    timestamp: str,
    attempt: int,
    user_agent: str,
    custom: Mapping[str, str] | None = None,
    extra: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """
    Headers for a signed outbound request.

    Custom headers come first and can never replace the content type, user
    agent, signature, event, timestamp or attempt headers, nor the ``extra``
    identification headers.

    Args:
        body: Encoded request body.
        secret: Signing secret. No signature header is sent without one.
        event: Event name.
        timestamp: ISO timestamp of the payload.
        attempt: 1-based delivery attempt.
        user_agent: User-Agent value.
        custom: Caller-configured headers.
        extra: Additional system headers (ids of the subscription, job...).

    Returns:
        The merged header dict.
    """
    system: dict[str, str] = {
        "Content-Type": "application/json",
        "User-Agent": user_agent,
        HEADER_EVENT: event,
        HEADER_TIMESTAMP: timestamp,
        HEADER_ATTEMPT: str(attempt),
    }
    if secret:
        system[HEADER_SIGNATURE] = sign_payload(body, secret)
    if extra:
        system.update(extra)

    reserved = {name.lower() for name in system} | {HEADER_SIGNATURE.lower()}
    headers = {
        name: value for name, value in (custom or {}).items() if name.lower() not in reserved
    }
    headers.update(system)
    return headers
