"""Webhook signature verification.

The provider signs ``"{timestamp}.{raw body}"`` with HMAC-SHA256 and sends the
hex digest and the timestamp in two headers. The digest is computed over the
bytes exactly as received; re-serialising the JSON would change them.
"""
import hashlib
import hmac
import logging
import time
from typing import Optional, Union

logger = logging.getLogger("uvicorn.error")

DEFAULT_TOLERANCE_SECONDS = 300


def _as_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def compute_signature(raw_body: bytes, timestamp: Union[str, int], secret: Union[str, bytes]) -> str:
    signed_payload = str(timestamp).encode("ascii") + b"." + raw_body
    return hmac.new(_as_bytes(secret), signed_payload, hashlib.sha256).hexdigest()


def constant_time_equals(provided: Union[str, bytes], expected: Union[str, bytes]) -> bool:
    """Compare without an early exit on the first differing byte."""
    a = _as_bytes(provided)
    b = _as_bytes(expected)
    if len(a) != len(b):
        return False
    result = 0
    for x, y in zip(a, b):
        result |= x ^ y
    return result == 0


def verify(
    raw_body: bytes,
    signature_header: Optional[str],
    timestamp_header: Optional[str],
    secret: Union[str, bytes],
    now: Optional[float] = None,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> bool:
    if not signature_header or not timestamp_header:
        logger.warning("webhook signature check: missing signature or timestamp header")
        return False

    # int() also takes non-ASCII digits, which the signed payload cannot carry
    if not timestamp_header.strip().isascii():
        logger.warning("webhook signature check: non-ASCII timestamp %r", timestamp_header)
        return False
    try:
        timestamp = int(timestamp_header.strip())
    except ValueError:
        logger.warning("webhook signature check: unparseable timestamp %r", timestamp_header)
        return False

    current = int(time.time() if now is None else now)
    drift = abs(current - timestamp)
    if drift > tolerance:
        logger.warning("webhook signature check: timestamp outside window (drift=%ss)", drift)
        return False

    expected = compute_signature(raw_body, timestamp_header.strip(), secret)
    return constant_time_equals(signature_header.strip(), expected)
