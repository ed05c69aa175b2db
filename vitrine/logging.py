from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id shared by every log line emitted while handling one request
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Values under these keys are dropped entirely: a partial refresh token or
# a few digits of a six-digit code are still useful to an attacker.
_SECRET_KEY_PARTS = ("password", "secret", "token", "authorization", "cookie", "pepper", "code")
# Non-secret identifiers that happen to contain one of the parts above
_SAFE_KEYS = frozenset({"error_code", "status_code", "smtp_code"})
_EMAIL_KEY_PARTS = ("email", "to")

_REDACTED = "[redacted]"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's request id when one is supplied, otherwise mint one."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_email(email: Optional[str]) -> str:
    """Mask an email address for display or logging: ``ad***@example.com``."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop secrets and mask addresses before anything is rendered."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _SAFE_KEYS or not isinstance(value, str):
            continue
        if any(part in lower_key for part in _SECRET_KEY_PARTS):
            event_dict[key] = _REDACTED
        elif lower_key in _EMAIL_KEY_PARTS or "email" in lower_key:
            if "***@" not in value:
                event_dict[key] = mask_email(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
