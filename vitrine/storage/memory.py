from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional

from vitrine.logging import get_logger
from vitrine.storage.errors import ConstraintViolation
from vitrine.storage.models import AdminUser, RefreshTokenRecord, TwoFactorToken


class MemoryStore:
    """In-memory backing store for tests and local development.

    Every read returns a copy and every conditional write runs under one lock, so
    the check-then-act semantics match the Postgres ``UPDATE ... WHERE`` statements.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.admin_users: Dict[str, AdminUser] = {}
        # Keyed by token hash, which is unique
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.two_factor_tokens: Dict[str, TwoFactorToken] = {}
        # RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # admin users
    def create_admin_user(
        self,
        username: str,
        password_hash: str,
        *,
        role: str = "admin",
        is_active: bool = True,
    ) -> AdminUser:
        with self._data_lock:
            if any(u.username == username for u in self.admin_users.values()):
                raise ConstraintViolation("username already exists", field="username")
            now = datetime.now(timezone.utc)
            user = AdminUser(
                id=str(uuid.uuid4()),
                username=username,
                password_hash=password_hash,
                role=role,
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
            self.admin_users[user.id] = user
            return replace(user)

    def get_admin_user(self, user_id: str) -> Optional[AdminUser]:
        with self._data_lock:
            user = self.admin_users.get(user_id)
            return replace(user) if user else None

    def get_admin_user_by_username(self, username: str) -> Optional[AdminUser]:
        with self._data_lock:
            user = next(
                (u for u in self.admin_users.values() if u.username == username), None
            )
            return replace(user) if user else None

    def count_admin_users(self) -> int:
        with self._data_lock:
            return len(self.admin_users)

    def update_admin_password(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.admin_users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = datetime.now(timezone.utc)
            return True

    def set_admin_active(self, user_id: str, is_active: bool) -> bool:
        with self._data_lock:
            user = self.admin_users.get(user_id)
            if not user:
                return False
            user.is_active = is_active
            user.updated_at = datetime.now(timezone.utc)
            return True

    def record_admin_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.admin_users.get(user_id)
            if user:
                user.last_login_at = at

    def set_admin_two_factor(
        self,
        user_id: str,
        *,
        enabled: bool,
        email: Optional[str],
        verified: bool,
    ) -> Optional[AdminUser]:
        with self._data_lock:
            user = self.admin_users.get(user_id)
            if not user:
                return None
            user.two_factor_enabled = enabled
            user.two_factor_email = email
            user.two_factor_verified = verified
            user.updated_at = datetime.now(timezone.utc)
            return replace(user)

    # refresh tokens
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.user_id not in self.admin_users:
                raise ConstraintViolation("refresh token user missing", {"user_id": record.user_id})
            if record.token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token hash already exists", field="token_hash")
            self.refresh_tokens[record.token_hash] = replace(record)
            return replace(record)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    def rotate_refresh_token(
        self,
        token_hash: str,
        replacement: RefreshTokenRecord,
        revoked_at: datetime,
    ) -> bool:
        """Revoke ``token_hash`` and insert its replacement in one step.

        Returns False without inserting when the token is unknown or already revoked.
        """
        with self._data_lock:
            current = self.refresh_tokens.get(token_hash)
            if current is None or current.revoked_at is not None:
                return False
            self.insert_refresh_token(replacement)
            current.revoked_at = revoked_at
            current.replaced_by = replacement.token_hash
            return True

    def revoke_refresh_token(self, token_hash: str, revoked_at: datetime) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if record is None or record.revoked_at is not None:
                return False
            record.revoked_at = revoked_at
            return True

    def revoke_user_refresh_tokens(
        self,
        user_id: str,
        revoked_at: datetime,
        *,
        keep_hash: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id != user_id or record.revoked_at is not None:
                    continue
                if keep_hash and record.token_hash == keep_hash:
                    continue
                record.revoked_at = revoked_at
                revoked += 1
            return revoked

    def revoke_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.revoked_at is None and record.expires_at <= now:
                    record.revoked_at = now
                    revoked += 1
            return revoked

    # two-factor challenges
    def insert_two_factor_token(self, token: TwoFactorToken) -> TwoFactorToken:
        with self._data_lock:
            if token.user_id not in self.admin_users:
                raise ConstraintViolation("two-factor user missing", {"user_id": token.user_id})
            self.two_factor_tokens[token.id] = replace(token)
            return replace(token)

    def get_two_factor_token(self, token_id: str) -> Optional[TwoFactorToken]:
        with self._data_lock:
            token = self.two_factor_tokens.get(token_id)
            return replace(token) if token else None

    def get_latest_two_factor_token(
        self, user_id: str, purpose: str
    ) -> Optional[TwoFactorToken]:
        with self._data_lock:
            candidates = [
                t
                for t in self.two_factor_tokens.values()
                if t.user_id == user_id and t.purpose == purpose
            ]
            if not candidates:
                return None
            return replace(max(candidates, key=lambda t: t.last_sent_at))

    def register_two_factor_attempt(
        self,
        token_id: str,
        purpose: str,
        *,
        user_id: Optional[str] = None,
    ) -> Optional[TwoFactorToken]:
        """Increment the attempt counter and return the updated challenge."""
        with self._data_lock:
            token = self.two_factor_tokens.get(token_id)
            if token is None or token.purpose != purpose:
                return None
            if user_id is not None and token.user_id != user_id:
                return None
            token.attempts += 1
            return replace(token)

    def consume_two_factor_token(self, token_id: str, consumed_at: datetime) -> bool:
        with self._data_lock:
            token = self.two_factor_tokens.get(token_id)
            if token is None or token.consumed_at is not None:
                return False
            token.consumed_at = consumed_at
            return True

    def reissue_two_factor_token(
        self,
        token_id: str,
        *,
        code_hash: str,
        expires_at: datetime,
        sent_at: datetime,
        previous_sent_at: datetime,
    ) -> Optional[TwoFactorToken]:
        """Refresh a live challenge in place if nobody resent it since ``previous_sent_at``."""
        with self._data_lock:
            token = self.two_factor_tokens.get(token_id)
            if (
                token is None
                or token.consumed_at is not None
                or token.last_sent_at != previous_sent_at
            ):
                return None
            token.code_hash = code_hash
            token.expires_at = expires_at
            token.last_sent_at = sent_at
            token.attempts = 0
            return replace(token)

    def delete_expired_two_factor_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [tid for tid, t in self.two_factor_tokens.items() if t.expires_at <= before]
            for tid in stale:
                self.two_factor_tokens.pop(tid, None)
            return len(stale)
