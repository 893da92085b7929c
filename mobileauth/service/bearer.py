from __future__ import annotations

import re
from contextvars import ContextVar
from typing import Any, Mapping, Optional, Protocol

from mobileauth.logging import get_logger
from mobileauth.service.access_tokens import AccessTokenManager
from mobileauth.service.errors import (
    AuthenticationError,
    MalformedTokenError,
    ServiceError,
    UserNotFoundError,
)
from mobileauth.storage.models import User

_BEARER_RE = re.compile(r"^\s*Bearer\s+(\S.*?)\s*$", re.IGNORECASE)

_last_error_var: ContextVar[Optional[ServiceError]] = ContextVar(
    "bearer_last_error", default=None
)


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


def _header_value(headers: Any, name: str) -> Optional[str]:
    if headers is None:
        return None
    target = name.lower()
    items = headers.items() if hasattr(headers, "items") else headers
    for key, value in items:
        if isinstance(key, bytes):
            key = key.decode("latin-1")
        if str(key).lower() == target:
            if isinstance(value, bytes):
                value = value.decode("latin-1")
            return value
    return None


def normalize_auth_error(error: ServiceError) -> ServiceError:
    """Make sure a recorded failure always carries an HTTP status."""

    if not getattr(error, "status_code", None):
        error.status_code = 401
    return error


class BearerAuthenticator:
    """Resolve the calling user from a bearer access token.

    Credential failures never escape :meth:`resolve_user`; they are recorded
    for the current request context and exposed through :meth:`last_error`.
    Storage outages propagate so callers can answer with a 5xx.
    """

    def __init__(
        self,
        access_tokens: AccessTokenManager,
        users: UserDirectory,
        *,
        allow_query_token: bool = False,
        query_param: str = "jwt_token",
    ) -> None:
        self.access_tokens = access_tokens
        self.users = users
        self.allow_query_token = allow_query_token
        self.query_param = query_param
        self.logger = get_logger(__name__)

    def extract_token(self, request: Any) -> Optional[str]:
        headers = getattr(request, "headers", request)
        header = _header_value(headers, "authorization")
        if header:
            match = _BEARER_RE.match(header)
            if match:
                return match.group(1)
        if self.allow_query_token:
            query: Mapping[str, str] = getattr(request, "query_params", None) or {}
            value = query.get(self.query_param)
            if value:
                return value
        return None

    def resolve_user(self, request: Any) -> Optional[str]:
        self.clear_error()
        token = self.extract_token(request)
        if not token:
            return None
        try:
            claims = self.access_tokens.validate(token)
            if not claims.subject:
                raise MalformedTokenError("token missing subject")
            user = self.users.get_user(str(claims.subject))
            if user is None or not user.is_active:
                raise UserNotFoundError("user not found", status_code=401)
        except AuthenticationError as exc:
            self._record(exc)
            return None
        return user.id

    def _record(self, error: ServiceError) -> None:
        error = normalize_auth_error(error)
        _last_error_var.set(error)
        self.logger.info(
            "access_token_rejected", reason=error.error_code, message=error.message
        )

    def last_error(self) -> Optional[ServiceError]:
        return _last_error_var.get()

    def clear_error(self) -> None:
        _last_error_var.set(None)


__all__ = ["BearerAuthenticator", "UserDirectory", "normalize_auth_error"]
