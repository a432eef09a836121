"""HMAC-SHA256 signing for processor callbacks and outbound notifications."""

import hashlib
import hmac
import secrets
from datetime import UTC, datetime


def sign_payload(secret: str, timestamp: str, body: bytes | str) -> str:
    """Return the hex HMAC-SHA256 of ``timestamp.body``."""
    if isinstance(body, str):
        body = body.encode()
    message = timestamp.encode() + b"." + body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(secret: str, signature_hex: str, timestamp: str, body: bytes) -> bool:
    """Constant-time check of a ``sign_payload`` signature."""
    expected = sign_payload(secret, timestamp, body)
    return hmac.compare_digest(expected, signature_hex or "")


def generate_nonce() -> str:
    """Generate a cryptographically secure nonce."""
    return secrets.token_hex(16)


def is_timestamp_valid(timestamp: str, max_age_seconds: int = 300) -> bool:
    """Check if an ISO-8601 timestamp is within the allowed window."""
    try:
        ts = datetime.fromisoformat(timestamp)
        if ts.tzinfo is None:
            return False
        now = datetime.now(UTC)
        delta = abs((now - ts).total_seconds())
        return delta <= max_age_seconds
    except (ValueError, TypeError):
        return False
