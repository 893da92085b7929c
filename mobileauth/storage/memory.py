from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from mobileauth.logging import get_logger
from mobileauth.storage.errors import ConstraintViolation, StoreUnavailableError
from mobileauth.storage.models import RefreshToken, User


class MemoryStore:
    """In-memory user directory and refresh-token table.

    State is mirrored to ``<fs_root>/state/memory_store.json`` after every
    write so a development server keeps its accounts across restarts.
    """

    def __init__(self, fs_root: str = "/tmp/mobileauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so helpers can be called while a write holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users / credentials
    def create_user(
        self,
        username: str,
        email: str,
        display_name: Optional[str] = None,
        *,
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            lowered_username = username.lower()
            lowered_email = email.lower()
            for existing in self.users.values():
                if existing.username.lower() == lowered_username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if existing.email.lower() == lowered_email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                display_name=display_name or username,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        lowered = username.lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.username.lower() == lowered), None
            )

    def get_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email.lower() == lowered), None
            )

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            # Refresh token rows are retained for audit
            self._persist_state()
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh tokens
    def create_refresh_token(
        self,
        user_id: str,
        token_hash: str,
        device_info: Optional[str],
        created_at: datetime,
        expires_at: datetime,
    ) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            record = RefreshToken(
                id=str(uuid.uuid4()),
                user_id=user_id,
                token_hash=token_hash,
                device_info=device_info,
                created_at=created_at,
                expires_at=expires_at,
            )
            self.refresh_tokens[record.id] = record
            self._persist_state()
            return record

    def list_live_refresh_tokens(
        self, now: datetime, user_id: Optional[str] = None
    ) -> List[RefreshToken]:
        with self._data_lock:
            return [
                record
                for record in self.refresh_tokens.values()
                if record.is_live(now) and (user_id is None or record.user_id == user_id)
            ]

    def update_refresh_token(
        self,
        token_id: str,
        *,
        last_used_at: Optional[datetime] = None,
        revoked_at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if not record:
                return
            if last_used_at is not None:
                record.last_used_at = last_used_at
            # Revocation is permanent; the first timestamp wins
            if revoked_at is not None and record.revoked_at is None:
                record.revoked_at = revoked_at
            self._persist_state()

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            live = [
                record
                for record in self.refresh_tokens.values()
                if record.user_id == user_id and record.is_live(now)
            ]
            for record in live:
                record.revoked_at = now
            if live:
                self._persist_state()
            return len(live)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreUnavailableError(
                "failed to persist in-memory state", {"path": str(path)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # try/except instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "display_name": user.display_name,
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            display_name=data.get("display_name"),
            created_at=self._deserialize_datetime(data["created_at"]),
            is_active=data.get("is_active", True),
            meta=data.get("meta"),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token_hash": token.token_hash,
            "device_info": token.device_info,
            "created_at": self._serialize_datetime(token.created_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "last_used_at": self._serialize_datetime(token.last_used_at),
            "revoked_at": self._serialize_datetime(token.revoked_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            token_hash=data["token_hash"],
            device_info=data.get("device_info"),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )
