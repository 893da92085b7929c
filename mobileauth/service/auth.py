from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from mobileauth.logging import get_logger
from mobileauth.service.access_tokens import AccessTokenManager
from mobileauth.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    RegistrationDisabledError,
    UserNotFoundError,
    ValidationError,
)
from mobileauth.service.refresh_tokens import RefreshTokenBackend, RefreshTokenStore
from mobileauth.storage.errors import ConstraintViolation
from mobileauth.storage.models import RefreshToken, User

MIN_PASSWORD_LENGTH = 8
PASSWORD_ALGO = "argon2id"

logger = get_logger(__name__)


class AuthStore(RefreshTokenBackend, Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        display_name: Optional[str] = None,
        *,
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class IssuedTokens:
    user: User
    access_token: str
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None


class AuthService:
    """Account flows on top of the access and refresh token primitives.

    Refresh tokens are not rotated: a refresh mints a new access token and
    leaves the presented refresh token valid until expiry or revocation.
    """

    def __init__(
        self,
        store: AuthStore,
        access_tokens: AccessTokenManager,
        refresh_tokens: RefreshTokenStore,
        *,
        allow_registration: bool = True,
    ) -> None:
        self.store: AuthStore = store
        self.access_tokens = access_tokens
        self.refresh_tokens = refresh_tokens
        self.allow_registration = allow_registration
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.info("password_verification_failed", user_id=user_id)
            return False

    def _lookup_login(self, identifier: str) -> Optional[User]:
        user = self.store.get_user_by_username(identifier)
        if user is None and "@" in identifier:
            user = self.store.get_user_by_email(identifier)
        return user

    def _issue_pair(self, user: User, device_info: Optional[str]) -> IssuedTokens:
        access_token = self.access_tokens.issue(user.id, user)
        refresh_token, record = self.refresh_tokens.issue(user.id, device_info)
        return IssuedTokens(
            user=user,
            access_token=access_token,
            refresh_token=refresh_token,
            refresh_expires_at=record.expires_at,
        )

    async def login(
        self, username: str, password: str, *, device_info: Optional[str] = None
    ) -> IssuedTokens:
        user = self._lookup_login(username)
        # argon2 runs in a worker thread
        verified = (
            user is not None
            and user.is_active
            and await asyncio.to_thread(self.verify_password, user.id, password)
        )
        if not verified:
            self.logger.info("login_failed")
            raise InvalidCredentialsError()
        self.logger.info("login_succeeded", user_id=user.id)
        return self._issue_pair(user, device_info)

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> IssuedTokens:
        if not self.allow_registration:
            raise RegistrationDisabledError("registration is disabled")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        try:
            user = self.store.create_user(username, email, display_name)
        except ConstraintViolation as exc:
            field = exc.detail.get("field", "username")
            raise ConflictError(
                f"{field} already exists", error_code=f"{field}_exists"
            ) from exc
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, password)
        self.store.save_password(user.id, pwd_hash, algo)
        self.logger.info("user_registered", user_id=user.id)
        return self._issue_pair(user, device_info)

    async def refresh(self, refresh_token: str) -> IssuedTokens:
        user_id = self.refresh_tokens.validate(refresh_token)
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            raise UserNotFoundError("user not found", status_code=404)
        return IssuedTokens(
            user=user, access_token=self.access_tokens.issue(user.id, user)
        )

    async def logout(
        self,
        *,
        refresh_token: Optional[str] = None,
        all_devices: bool = False,
        user_id: Optional[str] = None,
    ) -> int:
        """Revoke refresh tokens; returns how many were revoked.

        ``all_devices`` only applies when the caller is authenticated.
        """
        if all_devices and user_id:
            return self.refresh_tokens.revoke_all(user_id)
        if refresh_token:
            return 1 if self.refresh_tokens.revoke(refresh_token) else 0
        return 0

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError("user not found", status_code=401)
        return user

    def list_sessions(self, user_id: str) -> List[RefreshToken]:
        return self.refresh_tokens.list_sessions(user_id)


__all__ = ["AuthService", "AuthStore", "IssuedTokens"]
