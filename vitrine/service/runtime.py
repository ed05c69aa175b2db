from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from vitrine.config import get_settings, reset_settings_cache
from vitrine.logging import get_logger
from vitrine.service.auth import AuthService
from vitrine.service.email import EmailService
from vitrine.service.hashing import Argon2PasswordHasher, HmacDigest
from vitrine.service.rate_limit import LoginRateLimiter
from vitrine.service.session_guard import SessionGuard
from vitrine.service.tokens import TokenService
from vitrine.service.two_factor import TwoFactorEngine
from vitrine.storage.memory import MemoryStore
from vitrine.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a DSN with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    ``clock`` overrides the wall clock for every time-dependent service; tests
    pass a fake clock to step through token expiry and cooldowns.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None):
        self.settings = get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        if not self.email.is_configured:
            logger.warning("email_delivery_disabled", reason="SMTP_HOST or EMAIL_FROM_ADDRESS unset")

        self.hasher = Argon2PasswordHasher(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
            parallelism=self.settings.password_hash_parallelism,
        )
        self.limiter = LoginRateLimiter(
            max_attempts=self.settings.login_rate_limit_max_attempts,
            window_seconds=self.settings.login_rate_limit_window_seconds,
            clock=(lambda: clock().timestamp()) if clock else time.monotonic,
        )
        self.tokens = TokenService(
            self.store,
            self.settings,
            HmacDigest(self.settings.jwt_secret, namespace="refresh"),
            clock=clock,
        )
        self.two_factor = TwoFactorEngine(
            self.store,
            HmacDigest(self.settings.two_factor_code_pepper, namespace="two-factor"),
            ttl_minutes=self.settings.two_factor_code_ttl_minutes,
            cooldown_seconds=self.settings.two_factor_send_cooldown_seconds,
            max_attempts=self.settings.two_factor_max_attempts,
            clock=clock,
        )
        self.guard = SessionGuard(self.tokens)
        self.auth = AuthService(
            self.store,
            self.settings,
            hasher=self.hasher,
            limiter=self.limiter,
            tokens=self.tokens,
            two_factor=self.two_factor,
            email=self.email,
            clock=clock,
        )

    def housekeeping(self) -> dict[str, int]:
        """Sweep expired refresh rows, stale challenges and limiter entries."""
        result = {
            "refresh_tokens_revoked": self.tokens.purge_expired(),
            "challenges_deleted": self.two_factor.purge_expired(),
            "rate_limit_entries_pruned": self.limiter.prune(),
        }
        logger.info("housekeeping_completed", **result)
        return result


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, clock: Callable[[], datetime] | None = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.store.close()
        runtime = Runtime(clock=clock)
        return runtime
