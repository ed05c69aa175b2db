from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from vitrine.api.schemas import ErrorBody, ErrorEnvelope
from vitrine.api.session import LOGIN_PAGE, LoginRedirect, clear_session_cookies
from vitrine.config import get_settings
from vitrine.logging import get_logger
from vitrine.service.errors import ServiceError, UnauthenticatedError
from vitrine.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    429: "rate_limited",
    503: "email_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Render the ``{"success": false, "error": {...}}`` envelope."""
    body = ErrorBody(code=code or _error_code_for_status(status_code), message=message, details=details)
    return JSONResponse(status_code=status_code, content=ErrorEnvelope(error=body).model_dump())


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        details.append({"loc": loc, "msg": err.get("msg"), "type": err.get("type")})
    return details


def uncaught_error_response(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
    )
    return _error_response(500, "internal server error", code="server_error")


def register_exception_handlers(app: FastAPI) -> None:
    """Install error envelopes for service, storage, and framework errors."""

    @app.exception_handler(LoginRedirect)
    async def handle_login_redirect(request: Request, exc: LoginRedirect):
        response = RedirectResponse(LOGIN_PAGE, status_code=303)
        if exc.clear_cookies:
            clear_session_cookies(response, request, get_settings())
        return response

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        response = _error_response(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)
        retry_after = getattr(exc, "retry_after", None)
        if retry_after:
            response.headers["Retry-After"] = str(retry_after)
        if isinstance(exc, UnauthenticatedError) and exc.clear_session:
            clear_session_cookies(response, request, get_settings())
        return response

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=len(details),
        )
        return _error_response(400, "Invalid request", details, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        response = _error_response(exc.status_code, message)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        return uncaught_error_response(request, exc)
