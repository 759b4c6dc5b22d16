"""HMAC-SHA256 webhook signatures.

Header format: ``t=<unix seconds>,v1=<hex digest>`` where the digest covers
``"<t>.<raw body>"``. Several ``v1`` entries may be present during secret
rotation; any match passes. Timestamps outside the tolerance window are
rejected to limit replay.
"""

from __future__ import annotations

import hashlib
import hmac
import time

from src.dealsmart.core.errors import AuthError

SCHEME = "v1"


def compute_signature(raw_body: bytes, secret: str, timestamp: int) -> str:
    signed = str(timestamp).encode() + b"." + raw_body
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def sign_payload(raw_body: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a signature header value for ``raw_body``."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},{SCHEME}={compute_signature(raw_body, secret, ts)}"


def _parse_header(header: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise AuthError("Malformed signature timestamp") from exc
        elif key == SCHEME:
            signatures.append(value)
    if timestamp is None or not signatures:
        raise AuthError("Malformed signature header")
    return timestamp, signatures


def verify_signature(
    raw_body: bytes,
    header: str | None,
    secret: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> int:
    """Verify ``header`` against ``raw_body``.

    Returns:
        The signed timestamp.

    Raises:
        AuthError: Missing secret or header, malformed header, stale
            timestamp, or no matching signature.
    """
    if not secret:
        raise AuthError("Webhook secret is not configured")
    if not header:
        raise AuthError("Missing signature header")

    timestamp, signatures = _parse_header(header)
    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise AuthError("Signature timestamp outside tolerance")

    expected = compute_signature(raw_body, secret, timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise AuthError("Signature mismatch")
    return timestamp
