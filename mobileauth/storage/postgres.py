from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import DataError, OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from mobileauth.logging import get_logger
from mobileauth.storage.errors import ConstraintViolation, StoreUnavailableError
from mobileauth.storage.models import RefreshToken, User, utcnow

REQUIRED_TABLES = ("app_user", "user_auth_credential", "refresh_token")


class PostgresStore:
    """Postgres-backed user directory and refresh-token table.

    Tables are provisioned out of band; the store only verifies they exist.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailableError("token store unavailable") from exc

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _user_from_row(row: dict) -> User:
        meta = row.get("meta")
        if isinstance(meta, str):
            try:
                meta = json.loads(meta)
            except ValueError:
                meta = None
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            display_name=row.get("display_name"),
            created_at=row.get("created_at") or utcnow(),
            is_active=row.get("is_active", True),
            meta=meta,
        )

    @staticmethod
    def _refresh_token_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            device_info=row.get("device_info"),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_used_at=row.get("last_used_at"),
            revoked_at=row.get("revoked_at"),
        )

    # users
    def create_user(
        self,
        username: str,
        email: str,
        display_name: Optional[str] = None,
        *,
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, display_name, is_active, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        username,
                        email,
                        display_name or username,
                        is_active,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "email" if "email" in constraint else "username"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(username) = lower(%s)", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # refresh tokens
    def create_refresh_token(
        self,
        user_id: str,
        token_hash: str,
        device_info: Optional[str],
        created_at: datetime,
        expires_at: datetime,
    ) -> RefreshToken:
        token_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token_hash, device_info, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (token_id, user_id, token_hash, device_info, created_at, expires_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return RefreshToken(
            id=token_id,
            user_id=user_id,
            token_hash=token_hash,
            device_info=device_info,
            created_at=created_at,
            expires_at=expires_at,
        )

    def list_live_refresh_tokens(
        self, now: datetime, user_id: Optional[str] = None
    ) -> List[RefreshToken]:
        try:
            with self._connect() as conn:
                if user_id is not None:
                    rows = conn.execute(
                        """
                        SELECT * FROM refresh_token
                        WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                        """,
                        (user_id, now),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM refresh_token WHERE revoked_at IS NULL AND expires_at > %s",
                        (now,),
                    ).fetchall()
        except DataError as exc:
            # A user_id the column type rejects owns no tokens
            self.logger.info("refresh_token_lookup_rejected", error_type=type(exc).__name__)
            return []
        return [self._refresh_token_from_row(row) for row in rows]

    def update_refresh_token(
        self,
        token_id: str,
        *,
        last_used_at: Optional[datetime] = None,
        revoked_at: Optional[datetime] = None,
    ) -> None:
        with self._connect() as conn:
            if last_used_at is not None:
                conn.execute(
                    "UPDATE refresh_token SET last_used_at = %s WHERE id = %s",
                    (last_used_at, token_id),
                )
            if revoked_at is not None:
                conn.execute(
                    "UPDATE refresh_token SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL",
                    (revoked_at, token_id),
                )

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                """,
                (now, user_id, now),
            )
            return result.rowcount
