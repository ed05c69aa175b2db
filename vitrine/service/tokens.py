from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Tuple

from vitrine.config import Settings
from vitrine.logging import get_logger
from vitrine.service.errors import UnauthenticatedError
from vitrine.service.hashing import TokenDigest
from vitrine.storage.models import AdminUser, RefreshTokenRecord

logger = get_logger(__name__)


class RefreshTokenStore(Protocol):
    def get_admin_user(self, user_id: str) -> Optional[AdminUser]: ...

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self, token_hash: str, replacement: RefreshTokenRecord, revoked_at: datetime
    ) -> bool: ...

    def revoke_refresh_token(self, token_hash: str, revoked_at: datetime) -> bool: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, revoked_at: datetime, *, keep_hash: Optional[str] = None
    ) -> int: ...

    def revoke_expired_refresh_tokens(self, now: datetime) -> int: ...


class AccessTokenState(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INVALID = "invalid"


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    username: str
    role: str
    jti: str
    issued_at: int
    expires_at: int

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AccessClaims":
        return cls(
            user_id=str(payload["sub"]),
            username=str(payload["username"]),
            role=str(payload.get("role") or "admin"),
            jti=str(payload.get("jti") or ""),
            issued_at=int(payload.get("iat") or 0),
            expires_at=int(payload["exp"]),
        )


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    claims: AccessClaims
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_started_at: datetime
    issued_at: datetime

    @property
    def access_max_age(self) -> int:
        return max(0, int((self.access_expires_at - self.issued_at).total_seconds()))

    @property
    def refresh_max_age(self) -> int:
        return max(0, int((self.refresh_expires_at - self.issued_at).total_seconds()))


class TokenService:
    """Access JWTs plus opaque refresh tokens rotated on every use.

    Access tokens are verified statelessly. Refresh tokens are stored only as
    keyed digests; rotation revokes the presented row with a conditional update
    so a token can be exchanged at most once.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        settings: Settings,
        digest: TokenDigest,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.digest = digest
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)

    def _now(self) -> datetime:
        return self._clock()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        signature = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(signature)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _build_access_token(self, user: AdminUser, now: datetime) -> Tuple[str, AccessClaims, datetime]:
        expires_at = now + timedelta(seconds=self.settings.access_ttl_seconds)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "username": user.username,
            "role": user.role,
            "typ": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), AccessClaims.from_payload(payload), expires_at

    def decode_access_token(
        self, token: Optional[str]
    ) -> Tuple[AccessTokenState, Optional[AccessClaims]]:
        if not token:
            return AccessTokenState.INVALID, None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return AccessTokenState.INVALID, None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return AccessTokenState.INVALID, None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            return AccessTokenState.INVALID, None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return AccessTokenState.INVALID, None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return AccessTokenState.INVALID, None
        if not isinstance(payload, dict):
            return AccessTokenState.INVALID, None
        if payload.get("iss") != self.settings.jwt_issuer:
            return AccessTokenState.INVALID, None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or payload.get("typ") != "access":
            return AccessTokenState.INVALID, None
        try:
            claims = AccessClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError):
            return AccessTokenState.INVALID, None

        if claims.expires_at <= (self._now() - self._leeway).timestamp():
            return AccessTokenState.EXPIRED, claims
        return AccessTokenState.VALID, claims

    def issue_tokens(
        self,
        user: AdminUser,
        *,
        previous_hash: Optional[str] = None,
        session_started_at: Optional[datetime] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        now = self._now()
        started = session_started_at or now
        refresh_expires = now + timedelta(seconds=self.settings.refresh_ttl_seconds)
        if self.settings.refresh_absolute_ttl_seconds:
            cap = started + timedelta(seconds=self.settings.refresh_absolute_ttl_seconds)
            refresh_expires = min(refresh_expires, cap)

        refresh_token = secrets.token_hex(64)
        record = RefreshTokenRecord.new(
            user.id,
            self.digest.digest(refresh_token),
            now=now,
            expires_at=refresh_expires,
            session_started_at=started,
            ip=ip,
            user_agent=user_agent,
        )
        if previous_hash:
            if not self.store.rotate_refresh_token(previous_hash, record, now):
                logger.warning("refresh_rotation_conflict", user_id=user.id)
                raise UnauthenticatedError(reason="refresh_token_reused", clear_session=True)
        else:
            self.store.insert_refresh_token(record)

        access_token, claims, access_expires = self._build_access_token(user, now)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            claims=claims,
            access_expires_at=access_expires,
            refresh_expires_at=refresh_expires,
            session_started_at=started,
            issued_at=now,
        )

    def refresh(
        self,
        refresh_token: Optional[str],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[AdminUser, TokenPair]:
        if not refresh_token:
            raise UnauthenticatedError(reason="missing_refresh_token", clear_session=True)
        token_hash = self.digest.digest(refresh_token)
        record = self.store.get_refresh_token(token_hash)
        if record is None:
            raise UnauthenticatedError(reason="unknown_refresh_token", clear_session=True)
        if record.revoked_at is not None:
            logger.warning(
                "refresh_token_reuse_detected",
                user_id=record.user_id,
                record_id=record.id,
                ip=ip,
            )
            raise UnauthenticatedError(reason="refresh_token_reused", clear_session=True)

        now = self._now()
        if record.expires_at <= now:
            self.store.revoke_refresh_token(token_hash, now)
            raise UnauthenticatedError(reason="refresh_token_expired", clear_session=True)

        user = self.store.get_admin_user(record.user_id)
        if user is None or not user.is_active:
            self.store.revoke_refresh_token(token_hash, now)
            logger.warning("refresh_for_inactive_user", user_id=record.user_id)
            raise UnauthenticatedError(reason="user_inactive", clear_session=True)

        absolute = self.settings.refresh_absolute_ttl_seconds
        if absolute and now >= record.session_started_at + timedelta(seconds=absolute):
            self.store.revoke_refresh_token(token_hash, now)
            raise UnauthenticatedError(reason="session_lifetime_exceeded", clear_session=True)

        pair = self.issue_tokens(
            user,
            previous_hash=token_hash,
            session_started_at=record.session_started_at,
            ip=ip,
            user_agent=user_agent,
        )
        logger.info("refresh_token_rotated", user_id=user.id)
        return user, pair

    def logout(self, refresh_token: Optional[str]) -> None:
        if not refresh_token:
            return
        revoked = self.store.revoke_refresh_token(self.digest.digest(refresh_token), self._now())
        logger.info("admin_logout", revoked=revoked)

    def revoke_other_sessions(self, user_id: str, *, keep_token: Optional[str] = None) -> int:
        keep_hash = self.digest.digest(keep_token) if keep_token else None
        revoked = self.store.revoke_user_refresh_tokens(user_id, self._now(), keep_hash=keep_hash)
        logger.info("other_sessions_revoked", user_id=user_id, revoked=revoked)
        return revoked

    def purge_expired(self) -> int:
        return self.store.revoke_expired_refresh_tokens(self._now())
