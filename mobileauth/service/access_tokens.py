from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from mobileauth.logging import get_logger
from mobileauth.service import token_codec
from mobileauth.service.errors import (
    InvalidIssuerError,
    MalformedTokenError,
    TokenExpiredError,
    TokenMissingError,
    UserNotFoundError,
)
from mobileauth.storage.models import User, utcnow

REGISTERED_CLAIMS = frozenset({"iss", "iat", "exp", "sub", "email", "name"})


@dataclass
class AccessClaims:
    issuer: str
    issued_at: int
    expires_at: int
    subject: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload = {
            key: value
            for key, value in self.extra.items()
            if key not in REGISTERED_CLAIMS
        }
        payload.update(
            {
                "iss": self.issuer,
                "iat": self.issued_at,
                "exp": self.expires_at,
                "sub": self.subject,
                "email": self.email,
                "name": self.display_name,
            }
        )
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AccessClaims":
        return cls(
            issuer=payload.get("iss"),
            issued_at=payload.get("iat"),
            expires_at=payload.get("exp"),
            subject=payload.get("sub"),
            email=payload.get("email"),
            display_name=payload.get("name"),
            extra={k: v for k, v in payload.items() if k not in REGISTERED_CLAIMS},
        )


class AccessTokenManager:
    """Issues and validates short-lived signed access tokens.

    Access tokens carry no server-side state, so they cannot be revoked
    individually; rotating the signing secret invalidates all of them.
    """

    def __init__(
        self,
        secret: str | bytes,
        issuer: str,
        default_ttl: timedelta,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("signing secret required")
        self._secret = secret
        self.issuer = issuer
        self.default_ttl = default_ttl
        self._now = now
        self.logger = get_logger(__name__)

    def issue(
        self,
        user_id: str,
        profile: Optional[User],
        extra_claims: Optional[dict[str, Any]] = None,
        ttl: Optional[timedelta] = None,
    ) -> str:
        if profile is None:
            raise UserNotFoundError("user not found", detail={"user_id": user_id})
        lifetime = ttl if ttl is not None else self.default_ttl
        if lifetime.total_seconds() <= 0:
            raise ValueError("token lifetime must be positive")
        issued_at = int(self._now().timestamp())
        claims = AccessClaims(
            issuer=self.issuer,
            issued_at=issued_at,
            expires_at=issued_at + max(1, int(lifetime.total_seconds())),
            subject=user_id,
            email=profile.email,
            display_name=profile.display_name,
            extra=dict(extra_claims or {}),
        )
        token = token_codec.encode(claims.to_payload(), self._secret)
        self.logger.info("access_token_issued", user_id=user_id, exp=claims.expires_at)
        return token

    def validate(self, token: Optional[str]) -> AccessClaims:
        if not token:
            raise TokenMissingError("token required")
        payload = token_codec.decode(token, self._secret)

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise MalformedTokenError("token missing expiry")
        if exp < self._now().timestamp():
            raise TokenExpiredError("token expired")

        if payload.get("iss") != self.issuer:
            self.logger.warning("access_token_issuer_mismatch", iss=payload.get("iss"))
            raise InvalidIssuerError("invalid token issuer")
        return AccessClaims.from_payload(payload)


__all__ = ["AccessClaims", "AccessTokenManager", "REGISTERED_CLAIMS"]
