"""HMAC-SHA256 signing primitive used by the token codec."""

from __future__ import annotations

import hashlib
import hmac
from typing import Union

BytesLike = Union[str, bytes]


def _as_bytes(value: BytesLike) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def _require_secret(secret: BytesLike) -> bytes:
    key = _as_bytes(secret) if secret is not None else b""
    if not key:
        raise ValueError("signing secret required")
    return key


def sign(message: BytesLike, secret: BytesLike) -> bytes:
    """Return the raw HMAC-SHA256 digest of ``message`` under ``secret``."""
    key = _require_secret(secret)
    return hmac.new(key, _as_bytes(message), hashlib.sha256).digest()


def verify(message: BytesLike, signature: bytes, secret: BytesLike) -> bool:
    expected = sign(message, secret)
    # SECURITY: constant-time comparison
    return hmac.compare_digest(expected, _as_bytes(signature))


__all__ = ["sign", "verify"]
