from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from mobileauth.api.schemas import (
    AuthConfigResponse,
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    MeResponse,
    RefreshResponse,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    UserResponse,
)
from mobileauth.logging import get_correlation_id, get_logger
from mobileauth.service.auth import IssuedTokens
from mobileauth.service.runtime import get_runtime
from mobileauth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _envelope(data) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return envelope


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        display_name=user.display_name,
        created_at=user.created_at,
    )


def _auth_response(issued: IssuedTokens) -> AuthResponse:
    return AuthResponse(
        access_token=issued.access_token,
        refresh_token=issued.refresh_token,
        refresh_expires_at=issued.refresh_expires_at,
        user=_user_response(issued.user),
    )


async def get_current_user_id(request: Request) -> Optional[str]:
    """Resolve the bearer token if present; anonymous callers get None."""
    return get_runtime().bearer.resolve_user(request)


async def require_user_id(request: Request) -> str:
    bearer = get_runtime().bearer
    user_id = bearer.resolve_user(request)
    if not user_id:
        error = bearer.last_error()
        if error is not None:
            logger.info("bearer_auth_failed", reason=error.error_code)
        # One generic answer for every token failure
        raise _http_error("unauthorized", "invalid or expired token", status_code=401)
    return user_id


@router.get("/auth/config", response_model=Envelope, tags=["auth"])
async def auth_config():
    """Token lifetimes and registration policy for client bootstrap."""
    settings = get_runtime().settings
    return _envelope(
        AuthConfigResponse(
            access_token_ttl_days=settings.access_token_ttl_days,
            refresh_token_ttl_days=settings.refresh_token_ttl_days,
            registration_enabled=settings.allow_registration,
        )
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange username (or email) and password for an access/refresh pair.

    Raises:
        401: invalid_credentials for any unknown user or wrong password
    """
    runtime = get_runtime()
    issued = await runtime.auth.login(
        body.username, body.password, device_info=body.device_info
    )
    return _envelope(_auth_response(issued))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account and sign it in.

    Raises:
        403: registration_disabled
        400: username_exists or email_exists
    """
    runtime = get_runtime()
    issued = await runtime.auth.register(
        body.username,
        body.email,
        body.password,
        display_name=body.display_name,
        device_info=body.device_info,
    )
    return _envelope(_auth_response(issued))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    issued = await runtime.auth.refresh(body.refresh_token)
    return _envelope(
        RefreshResponse(
            access_token=issued.access_token, user=_user_response(issued.user)
        )
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest, user_id: Optional[str] = Depends(get_current_user_id)
):
    runtime = get_runtime()
    revoked = await runtime.auth.logout(
        refresh_token=body.refresh_token,
        all_devices=body.all_devices,
        user_id=user_id,
    )
    return _envelope(LogoutResponse(revoked=revoked))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(user_id: str = Depends(require_user_id)):
    runtime = get_runtime()
    user = runtime.auth.get_profile(user_id)
    return _envelope(MeResponse(user=_user_response(user)))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(user_id: str = Depends(require_user_id)):
    """List the caller's live refresh tokens, newest first."""
    runtime = get_runtime()
    items = [
        SessionResponse(
            id=record.id,
            device_info=record.device_info,
            created_at=record.created_at,
            last_used_at=record.last_used_at,
            expires_at=record.expires_at,
        )
        for record in runtime.auth.list_sessions(user_id)
    ]
    return _envelope(SessionListResponse(items=items))
