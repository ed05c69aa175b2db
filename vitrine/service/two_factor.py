from __future__ import annotations

import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from vitrine.logging import get_logger
from vitrine.service.errors import (
    AttemptsExceededError,
    ChallengeConsumedError,
    ChallengeExpiredError,
    ChallengeNotFoundError,
    CooldownActiveError,
    InvalidCodeError,
)
from vitrine.service.hashing import TokenDigest
from vitrine.storage.models import TwoFactorToken

logger = get_logger(__name__)

CODE_DIGITS = 6
# Challenges stay readable for a day after expiry so late verifies report "expired"
_PURGE_GRACE = timedelta(days=1)


class TwoFactorStore(Protocol):
    def insert_two_factor_token(self, token: TwoFactorToken) -> TwoFactorToken: ...

    def get_two_factor_token(self, token_id: str) -> Optional[TwoFactorToken]: ...

    def get_latest_two_factor_token(
        self, user_id: str, purpose: str
    ) -> Optional[TwoFactorToken]: ...

    def register_two_factor_attempt(
        self, token_id: str, purpose: str, *, user_id: Optional[str] = None
    ) -> Optional[TwoFactorToken]: ...

    def consume_two_factor_token(self, token_id: str, consumed_at: datetime) -> bool: ...

    def reissue_two_factor_token(
        self,
        token_id: str,
        *,
        code_hash: str,
        expires_at: datetime,
        sent_at: datetime,
        previous_sent_at: datetime,
    ) -> Optional[TwoFactorToken]: ...

    def delete_expired_two_factor_tokens(self, before: datetime) -> int: ...


@dataclass
class IssuedChallenge:
    """A freshly stored challenge plus the plaintext code for a single delivery."""

    challenge: TwoFactorToken
    code: str
    resend_available_in: int

    @property
    def id(self) -> str:
        return self.challenge.id

    @property
    def email(self) -> str:
        return self.challenge.email

    @property
    def expires_at(self) -> datetime:
        return self.challenge.expires_at


def generate_code(digits: int = CODE_DIGITS) -> str:
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


class TwoFactorEngine:
    """Email one-time-code challenges: issue, resend, verify.

    A challenge moves from issued to exactly one terminal state (verified,
    expired, or out of attempts). Only the keyed digest of a code is stored.
    """

    def __init__(
        self,
        store: TwoFactorStore,
        digest: TokenDigest,
        *,
        ttl_minutes: int = 10,
        cooldown_seconds: int = 60,
        max_attempts: int = 5,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.digest = digest
        self.ttl_minutes = ttl_minutes
        self.cooldown_seconds = cooldown_seconds
        self.max_attempts = max_attempts
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def _cooldown_remaining(self, token: TwoFactorToken, now: datetime) -> int:
        elapsed = (now - token.last_sent_at).total_seconds()
        remaining = self.cooldown_seconds - elapsed
        return math.ceil(remaining) if remaining > 0 else 0

    def issue(self, user_id: str, purpose: str, email: str) -> IssuedChallenge:
        now = self._now()
        code = generate_code()
        token = TwoFactorToken.new(
            user_id,
            self.digest.digest(code),
            purpose=purpose,
            email=email,
            now=now,
            ttl_minutes=self.ttl_minutes,
        )
        stored = self.store.insert_two_factor_token(token)
        logger.info("two_factor_challenge_issued", user_id=user_id, purpose=purpose, challenge_id=stored.id)
        return IssuedChallenge(stored, code, self.cooldown_seconds)

    def ensure_send_allowed(self, user_id: str, purpose: str) -> None:
        """Refuse a new send while the latest open challenge is inside its cooldown.

        A consumed challenge (verified, cancelled or replaced) no longer holds a
        live code, so it does not block a fresh send.
        """
        latest = self.store.get_latest_two_factor_token(user_id, purpose)
        if latest is None or latest.consumed_at is not None:
            return
        remaining = self._cooldown_remaining(latest, self._now())
        if remaining > 0:
            raise CooldownActiveError(
                "Please wait before requesting another code", retry_after=remaining
            )

    def resend(self, challenge_id: str, *, purpose: str) -> IssuedChallenge:
        token = self.store.get_two_factor_token(challenge_id)
        if token is None or token.purpose != purpose:
            raise ChallengeNotFoundError()
        if token.consumed_at is not None:
            raise ChallengeConsumedError()
        now = self._now()
        remaining = self._cooldown_remaining(token, now)
        if remaining > 0:
            raise CooldownActiveError(
                "Please wait before requesting another code", retry_after=remaining
            )

        if token.is_expired(now) or token.attempts >= self.max_attempts:
            # Terminal challenges are never revived; a fresh one replaces them
            self.store.consume_two_factor_token(token.id, now)
            logger.info("two_factor_challenge_replaced", challenge_id=token.id, purpose=purpose)
            return self.issue(token.user_id, purpose, token.email)

        code = generate_code()
        refreshed = self.store.reissue_two_factor_token(
            token.id,
            code_hash=self.digest.digest(code),
            expires_at=now + timedelta(minutes=self.ttl_minutes),
            sent_at=now,
            previous_sent_at=token.last_sent_at,
        )
        if refreshed is None:
            # Another resend won the conditional update
            raise CooldownActiveError(
                "Please wait before requesting another code",
                retry_after=max(1, self.cooldown_seconds),
            )
        logger.info("two_factor_challenge_resent", challenge_id=token.id, purpose=purpose)
        return IssuedChallenge(refreshed, code, self.cooldown_seconds)

    def verify(
        self,
        challenge_id: str,
        code: str,
        *,
        purpose: str,
        user_id: Optional[str] = None,
    ) -> TwoFactorToken:
        token = self.store.register_two_factor_attempt(challenge_id, purpose, user_id=user_id)
        if token is None:
            raise ChallengeNotFoundError()
        if token.consumed_at is not None:
            raise ChallengeConsumedError()
        now = self._now()
        if token.is_expired(now):
            raise ChallengeExpiredError()
        if token.attempts - 1 >= self.max_attempts:
            logger.warning("two_factor_attempts_exceeded", challenge_id=token.id, purpose=purpose)
            raise AttemptsExceededError("Too many attempts, request a new code")
        if not self.digest.matches(code or "", token.code_hash):
            remaining = max(0, self.max_attempts - token.attempts)
            logger.info("two_factor_code_mismatch", challenge_id=token.id, attempts=token.attempts)
            raise InvalidCodeError(
                "Invalid verification code", detail={"attempts_remaining": remaining}
            )
        if not self.store.consume_two_factor_token(token.id, now):
            raise ChallengeConsumedError()
        token.consumed_at = now
        logger.info("two_factor_challenge_verified", challenge_id=token.id, purpose=purpose)
        return token

    def cancel(self, challenge_id: str) -> bool:
        return self.store.consume_two_factor_token(challenge_id, self._now())

    def purge_expired(self) -> int:
        return self.store.delete_expired_two_factor_tokens(self._now() - _PURGE_GRACE)
