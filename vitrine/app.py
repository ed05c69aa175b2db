from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse

from vitrine.api.error_handling import (
    _error_response,
    register_exception_handlers,
    uncaught_error_response,
)
from vitrine.api.routes import router
from vitrine.api.session import (
    CSRF_COOKIE,
    apply_session_cookies,
    csrf_matches,
    issue_csrf_cookie,
    require_admin_page,
)
from vitrine.config import get_settings
from vitrine.logging import get_logger, set_correlation_id
from vitrine.service.errors import ForbiddenError
from vitrine.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
# Served without a session so the login screen can render
_OPEN_ADMIN_ASSETS = {"login", "login.html", "login.js", "styles.css"}

_housekeeping_task: asyncio.Task | None = None


async def _run_housekeeping(runtime: Runtime, interval_seconds: int) -> None:
    """Background loop that sweeps expired refresh rows, challenges and limiter entries."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await asyncio.to_thread(runtime.housekeeping)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort sweep
                logger.warning("housekeeping_failed", error_type=type(exc).__name__, error=str(exc))
    except asyncio.CancelledError:
        logger.info("housekeeping_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _housekeeping_task
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.ensure_seed_admin)
    interval = runtime.settings.housekeeping_interval_seconds
    if interval > 0:
        _housekeeping_task = asyncio.create_task(_run_housekeeping(runtime, interval))

    yield

    if _housekeeping_task:
        _housekeeping_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _housekeeping_task
        _housekeeping_task = None
    runtime.store.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Vitrine Admin", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def apply_rotated_session(request: Request, call_next):
    """Write cookies for tokens rotated by the session guard during this request."""
    # Handlers see the same scope state, so they can hand tokens back here
    request.state.rotated_tokens = None
    try:
        response = await call_next(request)
    except Exception as exc:
        # A rotated pair reaches the client even when the handler fails
        if request.state.rotated_tokens is None:
            raise
        response = uncaught_error_response(request, exc)
    tokens = request.state.rotated_tokens
    if tokens is not None:
        apply_session_cookies(response, request, tokens, get_settings())
    return response


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    path = request.url.path
    if request.method.upper() not in _CSRF_SAFE_METHODS and path.startswith("/api/"):
        if not csrf_matches(request):
            logger.warning("csrf_rejected", path=path, method=request.method)
            exc = ForbiddenError("missing or invalid CSRF token")
            return _error_response(exc.status_code, exc.message, code=exc.error_code)
    response = await call_next(request)
    is_admin_page = path == "/admin" or path.startswith("/admin/")
    if request.method.upper() == "GET" and is_admin_page and CSRF_COOKIE not in request.cookies:
        issue_csrf_cookie(response, request, get_settings())
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; img-src 'self' data:; frame-ancestors 'none'; base-uri 'self'; form-action 'self'",
    )
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


def _resolve_admin_asset(asset_path: str) -> Path:
    root = Path(get_settings().admin_static_dir).resolve()
    target = (root / asset_path).resolve()
    if not target.is_relative_to(root):
        logger.warning("admin_path_traversal_attempt", path=asset_path)
        raise HTTPException(status_code=404, detail="page not found")
    if target.is_dir():
        target = target / "index.html"
    elif not target.suffix:
        target = target.with_suffix(".html")
    if not target.is_file():
        raise HTTPException(status_code=404, detail="page not found")
    return target


@app.get("/admin/login", response_class=FileResponse, include_in_schema=False)
async def serve_login_page() -> FileResponse:
    return FileResponse(_resolve_admin_asset("login.html"))


@app.get("/admin", response_class=FileResponse, include_in_schema=False)
async def serve_admin_index(request: Request) -> FileResponse:
    await require_admin_page(request)
    return FileResponse(_resolve_admin_asset("index.html"))


@app.get("/admin/{asset_path:path}", response_class=FileResponse, include_in_schema=False)
async def serve_admin_asset(asset_path: str, request: Request) -> FileResponse:
    if asset_path.strip("/") not in _OPEN_ADMIN_ASSETS:
        await require_admin_page(request)
    return FileResponse(_resolve_admin_asset(asset_path))


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    store_type = type(runtime.store).__name__
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        db_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        db_ok = False
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        db_ok = False
    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": {"database": {"status": "healthy" if db_ok else "unhealthy", "type": store_type}},
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
