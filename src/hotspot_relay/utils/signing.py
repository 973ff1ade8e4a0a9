"""HMAC-SHA256 helpers for backend event polling, acks and the operational API."""

from __future__ import annotations

import hashlib
import hmac


def sign_body(secret: str, body: bytes | str) -> str:
    """Return the hex HMAC-SHA256 of ``body`` keyed by ``secret``."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes | str, signature: str | None) -> bool:
    """Constant-time comparison of a received hex signature against ``body``."""
    if not signature:
        return False
    expected = sign_body(secret, body)
    return hmac.compare_digest(expected, signature.strip().lower())


def sign_request(secret: str, timestamp: str, body: bytes | str = b"") -> str:
    """Signature for outbound requests: HMAC over ``"<timestamp>.<body>"``."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return sign_body(secret, timestamp.encode("utf-8") + b"." + body)
