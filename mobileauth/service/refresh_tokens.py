from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from mobileauth.logging import get_logger
from mobileauth.service.errors import InvalidRefreshTokenError
from mobileauth.storage.models import RefreshToken, utcnow

HASH_SCHEME = "sha256"
DEVICE_INFO_MAX_LENGTH = 255
_SALT_BYTES = 16
_SECRET_BYTES = 48


class RefreshTokenBackend(Protocol):
    def create_refresh_token(
        self,
        user_id: str,
        token_hash: str,
        device_info: Optional[str],
        created_at: datetime,
        expires_at: datetime,
    ) -> RefreshToken:
        ...

    def list_live_refresh_tokens(
        self, now: datetime, user_id: Optional[str] = None
    ) -> List[RefreshToken]:
        ...

    def update_refresh_token(
        self,
        token_id: str,
        *,
        last_used_at: Optional[datetime] = None,
        revoked_at: Optional[datetime] = None,
    ) -> None:
        ...

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int:
        ...


def hash_token(plaintext: str, salt: Optional[bytes] = None) -> str:
    salt = salt if salt is not None else secrets.token_bytes(_SALT_BYTES)
    digest = hashlib.sha256(salt + plaintext.encode("utf-8")).hexdigest()
    return f"{HASH_SCHEME}${salt.hex()}${digest}"


def token_matches(plaintext: str, stored_hash: str) -> bool:
    try:
        scheme, salt_hex, digest_hex = stored_hash.split("$")
        salt = bytes.fromhex(salt_hex)
    except ValueError:
        return False
    if scheme != HASH_SCHEME:
        return False
    candidate = hashlib.sha256(salt + plaintext.encode("utf-8")).hexdigest()
    return hmac.compare_digest(candidate, digest_hex)


def _normalize_device_info(device_info: Optional[str]) -> Optional[str]:
    if device_info is None:
        return None
    trimmed = device_info.strip()[:DEVICE_INFO_MAX_LENGTH]
    return trimmed or None


class RefreshTokenStore:
    """Opaque, revocable refresh tokens backed by a persistence backend.

    Plaintext tokens look like ``<user_id>.<random>``. The user-id prefix is
    only a lookup hint that bounds the candidate scan to one user's rows; the
    stored hash covers the whole string. Plaintext is returned once from
    :meth:`issue` and never persisted or logged.
    """

    def __init__(
        self,
        backend: RefreshTokenBackend,
        ttl: timedelta,
        *,
        max_per_user: Optional[int] = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        if ttl.total_seconds() <= 0:
            raise ValueError("refresh token lifetime must be positive")
        if max_per_user is not None and max_per_user < 1:
            raise ValueError("max_per_user must be positive")
        self.backend = backend
        self.ttl = ttl
        self.max_per_user = max_per_user
        self._now = now
        self.logger = get_logger(__name__)

    def issue(
        self, user_id: str, device_info: Optional[str] = None
    ) -> tuple[str, RefreshToken]:
        now = self._now()
        if self.max_per_user is not None:
            self._enforce_cap(user_id, now)
        plaintext = f"{user_id}.{secrets.token_urlsafe(_SECRET_BYTES)}"
        record = self.backend.create_refresh_token(
            user_id,
            hash_token(plaintext),
            _normalize_device_info(device_info),
            now,
            now + self.ttl,
        )
        self.logger.info(
            "refresh_token_issued",
            user_id=user_id,
            refresh_id=record.id,
            expires_at=record.expires_at.isoformat(),
        )
        return plaintext, record

    def _enforce_cap(self, user_id: str, now: datetime) -> None:
        live = sorted(
            self.backend.list_live_refresh_tokens(now, user_id=user_id),
            key=lambda record: record.created_at,
        )
        overflow = len(live) - self.max_per_user + 1
        for record in live[: max(overflow, 0)]:
            self.backend.update_refresh_token(record.id, revoked_at=now)
            self.logger.info(
                "refresh_token_evicted", user_id=user_id, refresh_id=record.id
            )

    def _find_live(self, plaintext: str, now: datetime) -> Optional[RefreshToken]:
        if not plaintext or not isinstance(plaintext, str):
            return None
        shard, sep, _ = plaintext.rpartition(".")
        if not sep or not shard:
            return None
        # Stores key users by uuid; anything else cannot match and never reaches SQL
        try:
            shard = str(uuid.UUID(shard))
        except ValueError:
            return None
        match = None
        # Compare against every candidate so timing does not reveal the position
        for record in self.backend.list_live_refresh_tokens(now, user_id=shard):
            if token_matches(plaintext, record.token_hash) and match is None:
                match = record
        return match

    def validate(self, plaintext: str) -> str:
        now = self._now()
        record = self._find_live(plaintext, now)
        if record is None:
            self.logger.info("refresh_token_rejected")
            raise InvalidRefreshTokenError()
        self.backend.update_refresh_token(record.id, last_used_at=now)
        return record.user_id

    def revoke(self, plaintext: str) -> bool:
        now = self._now()
        record = self._find_live(plaintext, now)
        if record is None:
            return False
        self.backend.update_refresh_token(record.id, revoked_at=now)
        self.logger.info(
            "refresh_token_revoked", user_id=record.user_id, refresh_id=record.id
        )
        return True

    def revoke_all(self, user_id: str) -> int:
        count = self.backend.revoke_user_refresh_tokens(user_id, self._now())
        self.logger.info("refresh_tokens_revoked_all", user_id=user_id, count=count)
        return count

    def list_sessions(self, user_id: str) -> List[RefreshToken]:
        records = self.backend.list_live_refresh_tokens(self._now(), user_id=user_id)
        return sorted(records, key=lambda record: record.created_at, reverse=True)


__all__ = [
    "RefreshTokenBackend",
    "RefreshTokenStore",
    "hash_token",
    "token_matches",
]
