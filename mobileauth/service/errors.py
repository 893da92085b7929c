from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` string that the API layer puts in the error envelope.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (400 for registration)."""
    status_code = 400
    error_code = "conflict"


# Token and credential errors. All are client-presented credential problems
# and never map to a 5xx.


class TokenError(AuthenticationError):
    """Base for access token verification failures."""
    error_code = "invalid_token"


class MalformedTokenError(TokenError):
    error_code = "malformed_token"


class TokenMissingError(MalformedTokenError):
    error_code = "empty_token"


class InvalidAlgorithmError(TokenError):
    error_code = "invalid_algorithm"


class InvalidSignatureError(TokenError):
    error_code = "invalid_signature"


class TokenExpiredError(TokenError):
    error_code = "token_expired"


class InvalidIssuerError(TokenError):
    error_code = "invalid_issuer"


class UserNotFoundError(AuthenticationError):
    """The token subject or requested user does not resolve to a profile."""
    error_code = "user_not_found"


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token unknown, expired, or revoked; deliberately indistinguishable."""
    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "Invalid or expired refresh token.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid username or password.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RegistrationDisabledError(ForbiddenError):
    error_code = "registration_disabled"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "ConflictError",
    "TokenError",
    "MalformedTokenError",
    "TokenMissingError",
    "InvalidAlgorithmError",
    "InvalidSignatureError",
    "TokenExpiredError",
    "InvalidIssuerError",
    "UserNotFoundError",
    "InvalidRefreshTokenError",
    "InvalidCredentialsError",
    "RegistrationDisabledError",
]
