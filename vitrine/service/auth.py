from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from vitrine.config import Settings
from vitrine.logging import get_logger, mask_email
from vitrine.service.email import EmailService
from vitrine.service.errors import (
    EmailUnavailableError,
    InvalidCredentialsError,
    RateLimitedError,
    UnauthenticatedError,
    ValidationError,
)
from vitrine.service.hashing import PasswordHasher
from vitrine.service.rate_limit import LoginRateLimiter
from vitrine.service.tokens import TokenPair, TokenService
from vitrine.service.two_factor import IssuedChallenge, TwoFactorEngine
from vitrine.storage.errors import ConstraintViolation
from vitrine.storage.models import AdminUser

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AdminStore(Protocol):
    def create_admin_user(
        self, username: str, password_hash: str, *, role: str = "admin", is_active: bool = True
    ) -> AdminUser: ...

    def get_admin_user(self, user_id: str) -> Optional[AdminUser]: ...

    def get_admin_user_by_username(self, username: str) -> Optional[AdminUser]: ...

    def count_admin_users(self) -> int: ...

    def update_admin_password(self, user_id: str, password_hash: str) -> bool: ...

    def record_admin_login(self, user_id: str, at: datetime) -> None: ...

    def set_admin_two_factor(
        self, user_id: str, *, enabled: bool, email: Optional[str], verified: bool
    ) -> Optional[AdminUser]: ...


@dataclass
class LoginResult:
    user: AdminUser
    tokens: Optional[TokenPair] = None
    challenge: Optional[IssuedChallenge] = None

    @property
    def requires_two_factor(self) -> bool:
        return self.challenge is not None


class AuthService:
    """Admin login, two-factor flows, password changes and account seeding."""

    def __init__(
        self,
        store: AdminStore,
        settings: Settings,
        *,
        hasher: PasswordHasher,
        limiter: LoginRateLimiter,
        tokens: TokenService,
        two_factor: TwoFactorEngine,
        email: EmailService,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.limiter = limiter
        self.tokens = tokens
        self.two_factor = two_factor
        self.email = email
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def _require_user(self, user_id: str) -> AdminUser:
        user = self.store.get_admin_user(user_id)
        if user is None or not user.is_active:
            raise UnauthenticatedError(reason="user_inactive", clear_session=True)
        return user

    def verify_credentials(self, username: str, password: str, *, address: str) -> AdminUser:
        """Return the active admin matching the credentials.

        Unknown users, inactive users and wrong passwords fail identically, and
        every failure counts one attempt against ``address``.
        """
        user = self.store.get_admin_user_by_username(username) if username else None
        if user is None or not user.is_active:
            self.hasher.dummy_verify(password or "")
            attempts = self.limiter.note_attempt(address)
            logger.warning("login_failed", reason="unknown_or_inactive", address=address, attempts=attempts)
            raise InvalidCredentialsError()
        if not self.hasher.verify(user.password_hash, password or ""):
            attempts = self.limiter.note_attempt(address)
            logger.warning("login_failed", reason="bad_password", user_id=user.id, address=address, attempts=attempts)
            raise InvalidCredentialsError()
        if self.hasher.needs_rehash(user.password_hash):
            self.store.update_admin_password(user.id, self.hasher.hash(password))
            logger.info("password_rehashed", user_id=user.id)
        return user

    def _ensure_not_limited(self, address: str) -> None:
        if self.limiter.is_limited(address):
            retry_after = self.limiter.retry_after(address)
            logger.warning("login_rate_limited", address=address, retry_after=retry_after)
            raise RateLimitedError(
                "Too many login attempts, try again later", retry_after=retry_after
            )

    async def _deliver_challenge(self, issued: IssuedChallenge) -> None:
        sent = False
        try:
            sent = await asyncio.to_thread(
                self.email.send_two_factor_code,
                issued.email,
                issued.code,
                purpose=issued.challenge.purpose,
                ttl_minutes=self.two_factor.ttl_minutes,
            )
        finally:
            if not sent:
                self.two_factor.cancel(issued.id)
                logger.warning(
                    "two_factor_delivery_failed",
                    challenge_id=issued.id,
                    to=mask_email(issued.email),
                )
        if not sent:
            raise EmailUnavailableError()

    def _start_session(
        self, user: AdminUser, *, address: Optional[str], user_agent: Optional[str]
    ) -> TokenPair:
        now = self._now()
        self.store.record_admin_login(user.id, now)
        pair = self.tokens.issue_tokens(user, ip=address, user_agent=user_agent)
        logger.info("admin_login", user_id=user.id, address=address)
        return pair

    async def login(
        self,
        username: str,
        password: str,
        *,
        address: str,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        self._ensure_not_limited(address)
        user = self.verify_credentials(username, password, address=address)

        if user.two_factor_enabled:
            if not user.two_factor_email:
                logger.error("two_factor_email_missing", user_id=user.id)
                raise EmailUnavailableError()
            self.two_factor.ensure_send_allowed(user.id, "login")
            issued = self.two_factor.issue(user.id, "login", user.two_factor_email)
            await self._deliver_challenge(issued)
            return LoginResult(user=user, challenge=issued)

        pair = self._start_session(user, address=address, user_agent=user_agent)
        return LoginResult(user=user, tokens=pair)

    async def verify_login_challenge(
        self,
        challenge_id: str,
        code: str,
        *,
        address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        token = self.two_factor.verify(challenge_id, code, purpose="login")
        user = self.store.get_admin_user(token.user_id)
        if user is None or not user.is_active:
            raise InvalidCredentialsError()
        pair = self._start_session(user, address=address, user_agent=user_agent)
        return LoginResult(user=user, tokens=pair)

    async def resend_login_challenge(self, challenge_id: str) -> IssuedChallenge:
        issued = self.two_factor.resend(challenge_id, purpose="login")
        await self._deliver_challenge(issued)
        return issued

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        confirm_password: str,
        *,
        keep_token: Optional[str] = None,
    ) -> None:
        if not current_password or not new_password or not confirm_password:
            raise ValidationError("All password fields are required")
        if new_password != confirm_password:
            raise ValidationError("Passwords do not match", detail={"field": "confirmPassword"})
        min_length = self.settings.password_min_length
        if len(new_password) < min_length:
            raise ValidationError(
                f"Password must be at least {min_length} characters",
                detail={"field": "newPassword", "min_length": min_length},
            )
        user = self._require_user(user_id)
        if not self.hasher.verify(user.password_hash, current_password):
            logger.warning("password_change_rejected", user_id=user.id, reason="bad_current")
            raise ValidationError("Current password is incorrect", detail={"field": "currentPassword"})
        if self.hasher.verify(user.password_hash, new_password):
            raise ValidationError(
                "New password must differ from the current one", detail={"field": "newPassword"}
            )

        self.store.update_admin_password(user.id, self.hasher.hash(new_password))
        self.tokens.revoke_other_sessions(user.id, keep_token=keep_token)
        logger.info("password_changed", user_id=user.id)

        if user.two_factor_enabled and user.two_factor_email:
            sent = await asyncio.to_thread(self.email.send_password_changed, user.two_factor_email)
            if not sent:
                logger.info("password_change_notice_skipped", user_id=user.id)

    def get_two_factor_settings(self, user_id: str) -> AdminUser:
        return self._require_user(user_id)

    async def send_two_factor_setup(self, user_id: str, email: str) -> IssuedChallenge:
        address = (email or "").strip()
        if not _EMAIL_RE.match(address) or len(address) > 254:
            raise ValidationError("Enter a valid email address", detail={"field": "email"})
        user = self._require_user(user_id)
        self.two_factor.ensure_send_allowed(user.id, "setup")
        issued = self.two_factor.issue(user.id, "setup", address)
        await self._deliver_challenge(issued)
        return issued

    async def confirm_two_factor_setup(
        self, user_id: str, challenge_id: str, code: str
    ) -> AdminUser:
        user = self._require_user(user_id)
        token = self.two_factor.verify(challenge_id, code, purpose="setup", user_id=user.id)
        updated = self.store.set_admin_two_factor(
            user.id, enabled=True, email=token.email, verified=True
        )
        if updated is None:
            raise UnauthenticatedError(reason="user_inactive", clear_session=True)
        logger.info("two_factor_enabled", user_id=user.id, to=mask_email(token.email))
        sent = await asyncio.to_thread(self.email.send_two_factor_enabled, token.email)
        if not sent:
            logger.info("two_factor_enabled_notice_skipped", user_id=user.id)
        return updated

    async def disable_two_factor(
        self, user_id: str, password: str, *, keep_token: Optional[str] = None
    ) -> AdminUser:
        user = self._require_user(user_id)
        if not password or not self.hasher.verify(user.password_hash, password):
            logger.warning("two_factor_disable_rejected", user_id=user.id)
            raise ValidationError("Password is incorrect", detail={"field": "password"})
        updated = self.store.set_admin_two_factor(user.id, enabled=False, email=None, verified=False)
        if updated is None:
            raise UnauthenticatedError(reason="user_inactive", clear_session=True)
        self.tokens.revoke_other_sessions(user.id, keep_token=keep_token)
        logger.info("two_factor_disabled", user_id=user.id)
        return updated

    def create_admin(self, username: str, password: str) -> AdminUser:
        name = (username or "").strip()
        if not name:
            raise ValidationError("Username is required", detail={"field": "username"})
        min_length = self.settings.password_min_length
        if not password or len(password) < min_length:
            raise ValidationError(
                f"Password must be at least {min_length} characters",
                detail={"field": "password", "min_length": min_length},
            )
        user = self.store.create_admin_user(name, self.hasher.hash(password))
        logger.info("admin_created", user_id=user.id, username=user.username)
        return user

    def ensure_seed_admin(self) -> Optional[AdminUser]:
        if self.store.count_admin_users() > 0:
            return None
        if not self.settings.admin_seed_password:
            logger.warning("admin_seed_skipped", reason="ADMIN_PASS not set")
            return None
        try:
            return self.create_admin(
                self.settings.admin_seed_username, self.settings.admin_seed_password
            )
        except ConstraintViolation:
            # Another worker seeded first
            return None
        except ValidationError as exc:
            logger.error("admin_seed_invalid", error=exc.message)
            return None
