from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from vitrine.logging import get_logger
from vitrine.storage.errors import ConstraintViolation
from vitrine.storage.models import AdminUser, RefreshTokenRecord, TwoFactorToken

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS admin_users (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'admin',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_email TEXT,
        two_factor_verified BOOLEAN NOT NULL DEFAULT FALSE,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES admin_users(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        session_started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked_at TIMESTAMPTZ,
        replaced_by TEXT,
        ip TEXT,
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_tokens_user_idx ON refresh_tokens (user_id)",
    """
    CREATE TABLE IF NOT EXISTS two_factor_tokens (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES admin_users(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        purpose TEXT NOT NULL CHECK (purpose IN ('login', 'setup')),
        email TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_sent_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS two_factor_tokens_user_idx ON two_factor_tokens (user_id, purpose)",
)


def _as_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return None


def _admin_from_row(row: dict[str, Any]) -> AdminUser:
    return AdminUser(
        id=str(row["id"]),
        username=row["username"],
        password_hash=row["password_hash"],
        role=row.get("role") or "admin",
        is_active=bool(row.get("is_active", True)),
        two_factor_enabled=bool(row.get("two_factor_enabled", False)),
        two_factor_email=row.get("two_factor_email"),
        two_factor_verified=bool(row.get("two_factor_verified", False)),
        last_login_at=row.get("last_login_at"),
        created_at=row["created_at"],
        updated_at=row.get("updated_at"),
    )


def _refresh_from_row(row: dict[str, Any]) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        session_started_at=row.get("session_started_at") or row["created_at"],
        revoked_at=row.get("revoked_at"),
        replaced_by=row.get("replaced_by"),
        ip=row.get("ip"),
        user_agent=row.get("user_agent"),
    )


def _challenge_from_row(row: dict[str, Any]) -> TwoFactorToken:
    return TwoFactorToken(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        code_hash=row["code_hash"],
        purpose=row["purpose"],
        email=row["email"],
        expires_at=row["expires_at"],
        last_sent_at=row["last_sent_at"],
        attempts=int(row.get("attempts") or 0),
        consumed_at=row.get("consumed_at"),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed credential, refresh-token and challenge store.

    Each public method borrows one pooled connection; the pool's context manager
    commits on exit and rolls back when the block raises.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # admin users
    def create_admin_user(
        self,
        username: str,
        password_hash: str,
        *,
        role: str = "admin",
        is_active: bool = True,
    ) -> AdminUser:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO admin_users (id, username, password_hash, role, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, username, password_hash, role, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", field="username")
        return _admin_from_row(row)

    def get_admin_user(self, user_id: str) -> Optional[AdminUser]:
        uid = _as_uuid(user_id)
        if uid is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_users WHERE id = %s", (uid,)
            ).fetchone()
        return _admin_from_row(row) if row else None

    def get_admin_user_by_username(self, username: str) -> Optional[AdminUser]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_users WHERE username = %s", (username,)
            ).fetchone()
        return _admin_from_row(row) if row else None

    def count_admin_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM admin_users").fetchone()
        return int(row["total"]) if row else 0

    def update_admin_password(self, user_id: str, password_hash: str) -> bool:
        uid = _as_uuid(user_id)
        if uid is None:
            return False
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE admin_users SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, uid),
            )
            return result.rowcount > 0

    def set_admin_active(self, user_id: str, is_active: bool) -> bool:
        uid = _as_uuid(user_id)
        if uid is None:
            return False
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE admin_users SET is_active = %s, updated_at = now() WHERE id = %s",
                (is_active, uid),
            )
            return result.rowcount > 0

    def record_admin_login(self, user_id: str, at: datetime) -> None:
        uid = _as_uuid(user_id)
        if uid is None:
            return
        with self._connect() as conn:
            conn.execute(
                "UPDATE admin_users SET last_login_at = %s WHERE id = %s", (at, uid)
            )

    def set_admin_two_factor(
        self,
        user_id: str,
        *,
        enabled: bool,
        email: Optional[str],
        verified: bool,
    ) -> Optional[AdminUser]:
        uid = _as_uuid(user_id)
        if uid is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE admin_users
                SET two_factor_enabled = %s, two_factor_email = %s,
                    two_factor_verified = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (enabled, email, verified, uid),
            ).fetchone()
        return _admin_from_row(row) if row else None

    # refresh tokens
    def _insert_refresh(self, conn, record: RefreshTokenRecord) -> None:
        conn.execute(
            """
            INSERT INTO refresh_tokens
                (id, user_id, token_hash, expires_at, created_at, session_started_at, ip, user_agent)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.user_id,
                record.token_hash,
                record.expires_at,
                record.created_at,
                record.session_started_at,
                record.ip,
                record.user_agent,
            ),
        )

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                self._insert_refresh(conn, record)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": record.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash already exists", field="token_hash")
        return record

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        token_hash: str,
        replacement: RefreshTokenRecord,
        revoked_at: datetime,
    ) -> bool:
        """Revoke ``token_hash`` and insert its replacement in one transaction.

        Zero updated rows means the token was already rotated or revoked; nothing
        is inserted in that case.
        """
        try:
            with self._connect() as conn:
                result = conn.execute(
                    """
                    UPDATE refresh_tokens
                    SET revoked_at = %s, replaced_by = %s
                    WHERE token_hash = %s AND revoked_at IS NULL
                    """,
                    (revoked_at, replacement.token_hash, token_hash),
                )
                if result.rowcount != 1:
                    return False
                self._insert_refresh(conn, replacement)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": replacement.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash already exists", field="token_hash")
        return True

    def revoke_refresh_token(self, token_hash: str, revoked_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_tokens SET revoked_at = %s
                WHERE token_hash = %s AND revoked_at IS NULL
                """,
                (revoked_at, token_hash),
            )
            return result.rowcount > 0

    def revoke_user_refresh_tokens(
        self,
        user_id: str,
        revoked_at: datetime,
        *,
        keep_hash: Optional[str] = None,
    ) -> int:
        uid = _as_uuid(user_id)
        if uid is None:
            return 0
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_tokens SET revoked_at = %s
                WHERE user_id = %s AND revoked_at IS NULL
                  AND (%s::text IS NULL OR token_hash <> %s)
                """,
                (revoked_at, uid, keep_hash, keep_hash),
            )
            return result.rowcount

    def revoke_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_tokens SET revoked_at = %s
                WHERE revoked_at IS NULL AND expires_at <= %s
                """,
                (now, now),
            )
            return result.rowcount

    # two-factor challenges
    def insert_two_factor_token(self, token: TwoFactorToken) -> TwoFactorToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO two_factor_tokens
                        (id, user_id, code_hash, purpose, email, attempts, last_sent_at, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.code_hash,
                        token.purpose,
                        token.email,
                        token.attempts,
                        token.last_sent_at,
                        token.expires_at,
                        token.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("two-factor user missing", {"user_id": token.user_id})
        return token

    def get_two_factor_token(self, token_id: str) -> Optional[TwoFactorToken]:
        tid = _as_uuid(token_id)
        if tid is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_tokens WHERE id = %s", (tid,)
            ).fetchone()
        return _challenge_from_row(row) if row else None

    def get_latest_two_factor_token(
        self, user_id: str, purpose: str
    ) -> Optional[TwoFactorToken]:
        uid = _as_uuid(user_id)
        if uid is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM two_factor_tokens
                WHERE user_id = %s AND purpose = %s
                ORDER BY last_sent_at DESC
                LIMIT 1
                """,
                (uid, purpose),
            ).fetchone()
        return _challenge_from_row(row) if row else None

    def register_two_factor_attempt(
        self,
        token_id: str,
        purpose: str,
        *,
        user_id: Optional[str] = None,
    ) -> Optional[TwoFactorToken]:
        tid = _as_uuid(token_id)
        if tid is None:
            return None
        owner = _as_uuid(user_id) if user_id is not None else None
        if user_id is not None and owner is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_tokens SET attempts = attempts + 1
                WHERE id = %s AND purpose = %s
                  AND (%s::uuid IS NULL OR user_id = %s)
                RETURNING *
                """,
                (tid, purpose, owner, owner),
            ).fetchone()
        return _challenge_from_row(row) if row else None

    def consume_two_factor_token(self, token_id: str, consumed_at: datetime) -> bool:
        tid = _as_uuid(token_id)
        if tid is None:
            return False
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE two_factor_tokens SET consumed_at = %s
                WHERE id = %s AND consumed_at IS NULL
                """,
                (consumed_at, tid),
            )
            return result.rowcount > 0

    def reissue_two_factor_token(
        self,
        token_id: str,
        *,
        code_hash: str,
        expires_at: datetime,
        sent_at: datetime,
        previous_sent_at: datetime,
    ) -> Optional[TwoFactorToken]:
        tid = _as_uuid(token_id)
        if tid is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_tokens
                SET code_hash = %s, expires_at = %s, last_sent_at = %s, attempts = 0
                WHERE id = %s AND consumed_at IS NULL AND last_sent_at = %s
                RETURNING *
                """,
                (code_hash, expires_at, sent_at, tid, previous_sent_at),
            ).fetchone()
        return _challenge_from_row(row) if row else None

    def delete_expired_two_factor_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM two_factor_tokens WHERE expires_at <= %s", (before,)
            )
            return result.rowcount
