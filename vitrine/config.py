from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from vitrine.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_ADMIN_DIR = Path(__file__).resolve().parent.parent / "admin"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the admin authentication service."""

    environment: str = env_field("development", "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/vitrine", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )
    state_dir: str = env_field("/var/lib/vitrine", "STATE_DIR")
    admin_static_dir: str = env_field(str(_DEFAULT_ADMIN_DIR), "ADMIN_STATIC_DIR")

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("vitrine", "JWT_ISSUER")
    jwt_audience: str = env_field("vitrine-admin", "JWT_AUDIENCE")
    access_ttl_seconds: int = env_field(
        15 * 60, "ACCESS_TTL_SECONDS", description="Access token lifetime", gt=0
    )
    refresh_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "REFRESH_TTL_SECONDS",
        description="Refresh token lifetime, renewed on every rotation",
        gt=0,
    )
    refresh_absolute_ttl_seconds: int = env_field(
        0,
        "REFRESH_ABSOLUTE_TTL_SECONDS",
        description="Hard cap on a session chain measured from first login; 0 keeps sessions sliding",
        ge=0,
    )
    clock_skew_leeway_seconds: int = env_field(30, "CLOCK_SKEW_LEEWAY_SECONDS", ge=0)
    cookie_secure: bool | None = env_field(
        None,
        "COOKIE_SECURE",
        description="Force the Secure cookie flag; unset derives it from APP_ENV and the request scheme",
    )

    # Login brute-force protection
    login_rate_limit_max_attempts: int = env_field(
        10, "LOGIN_RATE_LIMIT_MAX_ATTEMPTS", gt=0
    )
    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS", gt=0
    )

    # Two-factor challenges
    two_factor_code_ttl_minutes: int = env_field(10, "TWO_FACTOR_CODE_TTL_MINUTES", gt=0)
    two_factor_send_cooldown_seconds: int = env_field(
        60, "TWO_FACTOR_SEND_COOLDOWN_SECONDS", ge=0
    )
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS", gt=0)
    two_factor_code_pepper: str | None = env_field(None, "TWO_FACTOR_CODE_PEPPER")

    # Passwords
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST", ge=8)
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)

    # Seed account created when no admin exists
    admin_seed_username: str = env_field("admin", "ADMIN_USER")
    admin_seed_password: str | None = env_field(None, "ADMIN_PASS")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Vitrine", "EMAIL_FROM_NAME")

    housekeeping_interval_seconds: int = env_field(
        3600,
        "HOUSEKEEPING_INTERVAL_SECONDS",
        description="Sweep interval for expired refresh tokens and challenges; 0 disables",
        ge=0,
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @field_validator("cookie_secure", "two_factor_code_pepper", "admin_seed_password", mode="before")
    @classmethod
    def _blank_as_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so sessions survive restarts
        state_dir = Path(os.getenv("STATE_DIR", "/var/lib/vitrine"))
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
        return generated

    @model_validator(mode="after")
    def _default_code_pepper(self) -> "Settings":
        if not self.two_factor_code_pepper:
            self.two_factor_code_pepper = f"{self.jwt_secret}:two-factor"
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
