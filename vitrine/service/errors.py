from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` rendered in the error envelope:
    - validation_error (400)
    - invalid_challenge / invalid_code (400)
    - invalid_credentials / unauthorized (401)
    - forbidden (403)
    - rate_limited / cooldown_active / attempts_exceeded (429)
    - email_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidCredentialsError(ServiceError):
    """Unknown username, inactive account, or wrong password (401).

    The message is identical for every cause so callers cannot enumerate accounts.
    """
    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid username or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnauthenticatedError(ServiceError):
    """Absent, invalid, expired, or replayed session token (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self,
        message: str = "Unauthorized",
        *,
        reason: str = "unauthenticated",
        clear_session: bool = False,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason
        self.clear_session = clear_session


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Too many attempts from one client (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail["retry_after"] = retry_after
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class CooldownActiveError(RateLimitedError):
    """A code was sent too recently to send another (429)."""
    error_code = "cooldown_active"


class InvalidOrExpiredChallengeError(ServiceError):
    """The two-factor challenge cannot be used (400)."""
    status_code = 400
    error_code = "invalid_challenge"
    reason = "invalid"

    def __init__(self, message: str = "Invalid or expired verification code", **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("reason", self.reason)
        super().__init__(message, detail=detail, **kwargs)


class ChallengeNotFoundError(InvalidOrExpiredChallengeError):
    reason = "not_found"


class ChallengeConsumedError(InvalidOrExpiredChallengeError):
    reason = "already_consumed"


class ChallengeExpiredError(InvalidOrExpiredChallengeError):
    reason = "expired"


class InvalidCodeError(ServiceError):
    """The supplied code does not match; the challenge stays retryable (400)."""
    status_code = 400
    error_code = "invalid_code"


class AttemptsExceededError(ServiceError):
    """The challenge used up its verification attempts (429)."""
    status_code = 429
    error_code = "attempts_exceeded"


class EmailUnavailableError(ServiceError):
    """Outbound email could not be delivered (503)."""
    status_code = 503
    error_code = "email_unavailable"

    def __init__(self, message: str = "Email service not configured", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "UnauthenticatedError",
    "ForbiddenError",
    "RateLimitedError",
    "CooldownActiveError",
    "InvalidOrExpiredChallengeError",
    "ChallengeNotFoundError",
    "ChallengeConsumedError",
    "ChallengeExpiredError",
    "InvalidCodeError",
    "AttemptsExceededError",
    "EmailUnavailableError",
]
