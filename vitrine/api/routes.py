from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from vitrine.api.schemas import (
    ChallengeCodeRequest,
    ChallengeResponse,
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    ResendChallengeRequest,
    SessionResponse,
    SessionUser,
    SuccessResponse,
    TwoFactorDisableRequest,
    TwoFactorSettingsResponse,
    TwoFactorSetupRequest,
)
from vitrine.api.session import (
    REFRESH_COOKIE,
    apply_session_cookies,
    clear_session_cookies,
    client_address,
    current_refresh_token,
    require_admin,
)
from vitrine.logging import mask_email
from vitrine.service.runtime import get_runtime
from vitrine.service.tokens import AccessClaims
from vitrine.service.two_factor import IssuedChallenge
from vitrine.storage.models import AdminUser

router = APIRouter(prefix="/api")


def _session_user(user: AdminUser) -> SessionUser:
    return SessionUser(id=user.id, username=user.username, role=user.role)


def _challenge_response(issued: IssuedChallenge) -> ChallengeResponse:
    return ChallengeResponse(
        challenge_id=issued.id,
        delivery=mask_email(issued.email),
        expires_at=issued.expires_at,
        resend_available_in=issued.resend_available_in,
    )


def _two_factor_settings(user: AdminUser) -> TwoFactorSettingsResponse:
    return TwoFactorSettingsResponse(
        enabled=user.two_factor_enabled,
        email=user.two_factor_email,
        verified=user.two_factor_verified,
    )


@router.post("/auth/login", response_model=LoginResponse, response_model_exclude_none=True, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Verify admin credentials.

    Without two-factor the session cookies are set immediately. With
    two-factor a login challenge is emailed and its id returned instead.

    Raises:
        401: unknown user, inactive user, or wrong password
        429: too many failed attempts from this address
        503: the sign-in code could not be emailed
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.username,
        body.password,
        address=client_address(request),
        user_agent=request.headers.get("user-agent"),
    )
    if result.challenge is not None:
        issued = result.challenge
        return LoginResponse(
            requires_2fa=True,
            challenge_id=issued.id,
            delivery=mask_email(issued.email),
            expires_at=issued.expires_at,
            resend_available_in=issued.resend_available_in,
        )
    apply_session_cookies(response, request, result.tokens, runtime.settings)
    return LoginResponse(requires_2fa=False, user=_session_user(result.user))


@router.post("/auth/2fa/verify-login", response_model=LoginResponse, response_model_exclude_none=True, tags=["auth"])
async def verify_login(body: ChallengeCodeRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.verify_login_challenge(
        body.challenge_id,
        body.code,
        address=client_address(request),
        user_agent=request.headers.get("user-agent"),
    )
    apply_session_cookies(response, request, result.tokens, runtime.settings)
    return LoginResponse(requires_2fa=False, user=_session_user(result.user))


@router.post("/auth/2fa/resend-login", response_model=ChallengeResponse, tags=["auth"])
async def resend_login(body: ResendChallengeRequest):
    runtime = get_runtime()
    issued = await runtime.auth.resend_login_challenge(body.challenge_id)
    return _challenge_response(issued)


@router.post("/auth/refresh", response_model=SuccessResponse, tags=["auth"])
async def refresh(request: Request, response: Response):
    """Rotate the refresh cookie; a replayed or expired token clears the session."""
    runtime = get_runtime()
    _, tokens = runtime.tokens.refresh(
        request.cookies.get(REFRESH_COOKIE),
        ip=client_address(request),
        user_agent=request.headers.get("user-agent"),
    )
    apply_session_cookies(response, request, tokens, runtime.settings)
    return SuccessResponse()


@router.post("/auth/logout", response_model=SuccessResponse, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    runtime.tokens.logout(request.cookies.get(REFRESH_COOKIE))
    clear_session_cookies(response, request, runtime.settings)
    return SuccessResponse()


@router.get("/auth/session", response_model=SessionResponse, tags=["auth"])
async def session(claims: AccessClaims = Depends(require_admin)):
    return SessionResponse(
        user=SessionUser(id=claims.user_id, username=claims.username, role=claims.role)
    )


@router.post("/auth/change-password", response_model=SuccessResponse, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    claims: AccessClaims = Depends(require_admin),
):
    """Change the signed-in admin's password and sign out every other session."""
    runtime = get_runtime()
    await runtime.auth.change_password(
        claims.user_id,
        body.current_password,
        body.new_password,
        body.confirm_password,
        keep_token=current_refresh_token(request),
    )
    return SuccessResponse()


@router.get("/auth/2fa", response_model=TwoFactorSettingsResponse, tags=["two-factor"])
async def two_factor_settings(claims: AccessClaims = Depends(require_admin)):
    runtime = get_runtime()
    return _two_factor_settings(runtime.auth.get_two_factor_settings(claims.user_id))


@router.post("/auth/2fa/send-setup", response_model=ChallengeResponse, tags=["two-factor"])
async def send_two_factor_setup(
    body: TwoFactorSetupRequest, claims: AccessClaims = Depends(require_admin)
):
    runtime = get_runtime()
    issued = await runtime.auth.send_two_factor_setup(claims.user_id, body.email)
    return _challenge_response(issued)


@router.post("/auth/2fa/confirm-setup", response_model=TwoFactorSettingsResponse, tags=["two-factor"])
async def confirm_two_factor_setup(
    body: ChallengeCodeRequest, claims: AccessClaims = Depends(require_admin)
):
    runtime = get_runtime()
    user = await runtime.auth.confirm_two_factor_setup(
        claims.user_id, body.challenge_id, body.code
    )
    return _two_factor_settings(user)


@router.post("/auth/2fa/disable", response_model=TwoFactorSettingsResponse, tags=["two-factor"])
async def disable_two_factor(
    body: TwoFactorDisableRequest,
    request: Request,
    claims: AccessClaims = Depends(require_admin),
):
    runtime = get_runtime()
    user = await runtime.auth.disable_two_factor(
        claims.user_id, body.password, keep_token=current_refresh_token(request)
    )
    return _two_factor_settings(user)
