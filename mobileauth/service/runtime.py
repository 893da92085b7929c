from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from mobileauth.config import get_settings, reset_settings_cache
from mobileauth.logging import get_logger
from mobileauth.service.access_tokens import AccessTokenManager
from mobileauth.service.auth import AuthService
from mobileauth.service.bearer import BearerAuthenticator
from mobileauth.service.refresh_tokens import RefreshTokenStore
from mobileauth.storage.memory import MemoryStore
from mobileauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for safe logging.

    postgresql://app:hunter2@db/auth -> postgresql://app:***@db/auth
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (
            parsed.scheme,
            netloc,
            parsed.path,
            parsed.params,
            parsed.query,
            parsed.fragment,
        )
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    The signing secret is read once here, so a rotated secret takes effect
    on the next process start.
    """

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.access_tokens = AccessTokenManager(
            self.settings.jwt_secret,
            self.settings.jwt_issuer,
            self.settings.access_token_ttl,
        )
        self.refresh_tokens = RefreshTokenStore(
            self.store,
            self.settings.refresh_token_ttl,
            max_per_user=self.settings.max_refresh_tokens_per_user,
        )
        self.bearer = BearerAuthenticator(
            self.access_tokens,
            self.store,
            allow_query_token=self.settings.allow_query_token,
        )
        self.auth = AuthService(
            self.store,
            self.access_tokens,
            self.refresh_tokens,
            allow_registration=self.settings.allow_registration,
        )
        logger.info(
            "runtime_initialized",
            issuer=self.settings.jwt_issuer,
            access_token_ttl_days=self.settings.access_token_ttl_days,
            refresh_token_ttl_days=self.settings.refresh_token_ttl_days,
            allow_registration=self.settings.allow_registration,
            allow_query_token=self.settings.allow_query_token,
        )

    def close(self) -> None:
        pool = getattr(self.store, "pool", None)
        if pool is not None:
            pool.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once the runtime
    exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
