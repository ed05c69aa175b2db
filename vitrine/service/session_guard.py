from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from vitrine.logging import get_logger
from vitrine.service.errors import UnauthenticatedError
from vitrine.service.tokens import AccessClaims, AccessTokenState, TokenPair, TokenService

logger = get_logger(__name__)


@dataclass(frozen=True)
class Authenticated:
    claims: AccessClaims


@dataclass(frozen=True)
class AuthenticatedAndRotated:
    claims: AccessClaims
    tokens: TokenPair


@dataclass(frozen=True)
class Rejected:
    reason: str
    clear_cookies: bool = False


GuardResult = Union[Authenticated, AuthenticatedAndRotated, Rejected]


class SessionGuard:
    """Decides whether a request carries a usable admin session.

    A valid access token is accepted without touching the store. An absent or
    expired access token falls back to rotating the refresh token. The guard
    never writes cookies; callers act on the returned result.
    """

    def __init__(self, tokens: TokenService) -> None:
        self.tokens = tokens

    def check(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> GuardResult:
        if access_token:
            state, claims = self.tokens.decode_access_token(access_token)
            if state is AccessTokenState.VALID and claims is not None:
                return Authenticated(claims)
            if state is AccessTokenState.INVALID:
                logger.warning("session_guard_invalid_access_token", ip=ip)
                return Rejected("invalid_access_token")

        if not refresh_token:
            return Rejected("missing_session")

        try:
            _, pair = self.tokens.refresh(refresh_token, ip=ip, user_agent=user_agent)
        except UnauthenticatedError as exc:
            logger.info("session_guard_refresh_failed", reason=exc.reason, ip=ip)
            return Rejected(exc.reason, clear_cookies=True)
        return AuthenticatedAndRotated(pair.claims, pair)
