from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from mobileauth.logging import get_logger
from mobileauth.service import signing
from mobileauth.service.errors import (
    InvalidAlgorithmError,
    InvalidSignatureError,
    MalformedTokenError,
)

ALGORITHM = "HS256"
TOKEN_TYPE = "JWT"
SEPARATOR = "."

logger = get_logger(__name__)


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    data = base64.b64decode(segment + padding, altchars=b"-_", validate=True)
    # Reject non-canonical encodings (stray '+', '/', or unused trailing bits)
    if encode_segment(data) != segment:
        raise ValueError("non-canonical base64url segment")
    return data


def _canonical_json(value: dict[str, Any]) -> bytes:
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def encode(claims: dict[str, Any], secret: str | bytes) -> str:
    """Serialize ``claims`` into a signed ``header.payload.signature`` token.

    The output is deterministic for identical claims and secret.
    """
    header = {"typ": TOKEN_TYPE, "alg": ALGORITHM}
    header_enc = encode_segment(_canonical_json(header))
    payload_enc = encode_segment(_canonical_json(claims))
    signing_input = f"{header_enc}{SEPARATOR}{payload_enc}"
    signature = signing.sign(signing_input, secret)
    return f"{signing_input}{SEPARATOR}{encode_segment(signature)}"


def _load_object(raw: bytes, what: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedTokenError(f"invalid token {what}") from exc
    if not isinstance(parsed, dict):
        raise MalformedTokenError(f"invalid token {what}")
    return parsed


def decode(token: str, secret: str | bytes) -> dict[str, Any]:
    """Verify ``token`` and return its claims.

    Checks run in a fixed order: structure, algorithm, signature, payload.
    No claim is read before the signature has been verified.

    Raises:
        MalformedTokenError: wrong segment count, bad base64, or bad JSON.
        InvalidAlgorithmError: header declares anything other than HS256.
        InvalidSignatureError: signature does not match under ``secret``.
    """
    if not isinstance(token, str):
        raise MalformedTokenError("invalid token format")
    parts = token.split(SEPARATOR)
    if len(parts) != 3:
        raise MalformedTokenError("invalid token format")
    header_b64, payload_b64, sig_b64 = parts

    try:
        header_raw = decode_segment(header_b64)
        payload_raw = decode_segment(payload_b64)
        signature = decode_segment(sig_b64)
    except (binascii.Error, ValueError) as exc:
        raise MalformedTokenError("invalid token encoding") from exc

    header = _load_object(header_raw, "header")
    if header.get("alg") != ALGORITHM:
        logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
        raise InvalidAlgorithmError("invalid token algorithm")

    signing_input = f"{header_b64}{SEPARATOR}{payload_b64}"
    if not signing.verify(signing_input, signature, secret):
        raise InvalidSignatureError("invalid token signature")

    return _load_object(payload_raw, "payload")


__all__ = ["ALGORITHM", "encode", "decode", "encode_segment", "decode_segment"]
