from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

TWO_FACTOR_PURPOSES = ("login", "setup")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AdminUser:
    id: str
    username: str
    password_hash: str
    role: str = "admin"
    is_active: bool = True
    two_factor_enabled: bool = False
    two_factor_email: Optional[str] = None
    two_factor_verified: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class RefreshTokenRecord:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime
    session_started_at: datetime
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        *,
        now: datetime,
        expires_at: datetime,
        session_started_at: datetime | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> "RefreshTokenRecord":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            created_at=now,
            session_started_at=session_started_at or now,
            ip=ip,
            user_agent=user_agent,
        )

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class TwoFactorToken:
    id: str
    user_id: str
    code_hash: str
    purpose: str
    email: str
    expires_at: datetime
    last_sent_at: datetime
    attempts: int = 0
    consumed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        code_hash: str,
        *,
        purpose: str,
        email: str,
        now: datetime,
        ttl_minutes: int,
    ) -> "TwoFactorToken":
        if purpose not in TWO_FACTOR_PURPOSES:
            raise ValueError(f"unknown two-factor purpose: {purpose}")
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            code_hash=code_hash,
            purpose=purpose,
            email=email,
            expires_at=now + timedelta(minutes=ttl_minutes),
            last_sent_at=now,
            created_at=now,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now
