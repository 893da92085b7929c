from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    display_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    meta: Dict | None = None


@dataclass
class RefreshToken:
    """Persisted refresh token row; the plaintext value is never stored."""

    id: str
    user_id: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    device_info: Optional[str] = None
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now
