from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Request, Response

from vitrine.config import Settings
from vitrine.logging import get_logger
from vitrine.service.errors import UnauthenticatedError
from vitrine.service.runtime import get_runtime
from vitrine.service.session_guard import Authenticated, AuthenticatedAndRotated
from vitrine.service.tokens import AccessClaims, TokenPair

logger = get_logger(__name__)

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
CSRF_COOKIE = "csrfToken"
CSRF_HEADER = "X-CSRF-Token"
CSRF_COOKIE_MAX_AGE = 365 * 24 * 60 * 60
LOGIN_PAGE = "/admin/login"


class LoginRedirect(Exception):
    """Raised by page guards; rendered as a 303 to the login page."""

    def __init__(self, *, clear_cookies: bool = False) -> None:
        super().__init__("login required")
        self.clear_cookies = clear_cookies


def cookie_secure(request: Request, settings: Settings) -> bool:
    if settings.cookie_secure is not None:
        return settings.cookie_secure
    if not settings.is_production:
        return False
    forwarded = request.headers.get("x-forwarded-proto", "")
    return request.url.scheme == "https" or forwarded.split(",")[0].strip().lower() == "https"


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def apply_session_cookies(
    response: Response, request: Request, tokens: TokenPair, settings: Settings
) -> None:
    secure = cookie_secure(request, settings)
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        max_age=tokens.access_max_age,
        httponly=True,
        secure=secure,
        samesite="lax",
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        max_age=tokens.refresh_max_age,
        httponly=True,
        secure=secure,
        samesite="lax",
        path="/",
    )


def clear_session_cookies(response: Response, request: Request, settings: Settings) -> None:
    secure = cookie_secure(request, settings)
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="lax")


def issue_csrf_cookie(response: Response, request: Request, settings: Settings) -> str:
    token = secrets.token_urlsafe(32)
    response.set_cookie(
        CSRF_COOKIE,
        token,
        max_age=CSRF_COOKIE_MAX_AGE,
        httponly=False,
        secure=cookie_secure(request, settings),
        samesite="lax",
        path="/",
    )
    return token


def csrf_matches(request: Request) -> bool:
    header_token = request.headers.get(CSRF_HEADER)
    cookie_token = request.cookies.get(CSRF_COOKIE)
    if not header_token or not cookie_token:
        return False
    return secrets.compare_digest(header_token.encode(), cookie_token.encode())


def current_refresh_token(request: Request) -> Optional[str]:
    """The refresh token the client will hold after this response."""
    rotated: Optional[TokenPair] = getattr(request.state, "rotated_tokens", None)
    if rotated is not None:
        return rotated.refresh_token
    return request.cookies.get(REFRESH_COOKIE)


def _check_session(request: Request, *, page: bool) -> AccessClaims:
    runtime = get_runtime()
    result = runtime.guard.check(
        request.cookies.get(ACCESS_COOKIE),
        request.cookies.get(REFRESH_COOKIE),
        ip=client_address(request),
        user_agent=request.headers.get("user-agent"),
    )
    if isinstance(result, AuthenticatedAndRotated):
        request.state.rotated_tokens = result.tokens
        request.state.admin = result.claims
        return result.claims
    if isinstance(result, Authenticated):
        request.state.admin = result.claims
        return result.claims
    logger.info("admin_access_denied", path=request.url.path, reason=result.reason)
    if page:
        raise LoginRedirect(clear_cookies=result.clear_cookies)
    raise UnauthenticatedError(reason=result.reason, clear_session=result.clear_cookies)


async def require_admin(request: Request) -> AccessClaims:
    return _check_session(request, page=False)


async def require_admin_page(request: Request) -> AccessClaims:
    return _check_session(request, page=True)
