from __future__ import annotations

import os
import secrets
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from mobileauth.logging import get_logger

logger = get_logger(__name__)

SECRET_FILENAME = ".jwt_secret"
_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def secret_path(fs_root: str | os.PathLike | None = None) -> Path:
    root = Path(fs_root or os.getenv("SHARED_FS_ROOT", "/srv/mobileauth"))
    return root / SECRET_FILENAME


def write_secret(path: Path, value: str) -> None:
    """Atomically persist a signing secret with owner-only permissions."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent), prefix=".jwt_secret_", suffix=".tmp"
    )
    try:
        try:
            os.write(fd, value.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, str(path))
    except OSError:
        Path(tmp_path).unlink(missing_ok=True)
        raise


def generate_secret() -> str:
    return secrets.token_urlsafe(64)


class Settings(BaseModel):
    """Runtime settings for the token service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/mobileauth", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/mobileauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("http://localhost:8000", "JWT_ISSUER")
    access_token_ttl_days: int = env_field(
        30,
        "ACCESS_TOKEN_TTL_DAYS",
        description="Lifetime of signed access tokens in days",
    )
    refresh_token_ttl_days: int = env_field(
        90,
        "REFRESH_TOKEN_TTL_DAYS",
        description="Lifetime of opaque refresh tokens in days",
    )
    allow_registration: bool = env_field(
        True,
        "ALLOW_REGISTRATION",
        description="Allow new accounts through /auth/register",
    )
    allow_query_token: bool = env_field(
        False,
        "ALLOW_QUERY_TOKEN",
        description="Accept ?jwt_token= as a bearer fallback (debugging only)",
    )
    max_refresh_tokens_per_user: int | None = env_field(
        None,
        "MAX_REFRESH_TOKENS_PER_USER",
        description="Cap on live refresh tokens per user; oldest are revoked beyond it",
    )

    model_config = ConfigDict(extra="ignore")

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(days=self.access_token_ttl_days)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(days=self.refresh_token_ttl_days)

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("access_token_ttl_days", "refresh_token_ttl_days")
    @classmethod
    def _validate_ttl(cls, value: int) -> int:
        if value < 1:
            raise ValueError("token TTL must be at least one day")
        return value

    @field_validator("max_refresh_tokens_per_user", mode="before")
    @classmethod
    def _validate_token_cap(cls, value: Any) -> int | None:
        if value in (None, ""):
            return None
        cap = int(value)
        if cap < 1:
            raise ValueError("MAX_REFRESH_TOKENS_PER_USER must be positive")
        return cap

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # Generated once and persisted so tokens stay valid across restarts
        path = secret_path(info.data.get("shared_fs_root"))
        if path.exists() and not path.is_symlink():
            try:
                persisted = path.read_text().strip()
                if persisted and len(persisted) >= _MIN_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(path))

        generated = generate_secret()
        try:
            write_secret(path, generated)
        except OSError as exc:
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(path))
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
