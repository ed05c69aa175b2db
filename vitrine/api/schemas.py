from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from vitrine.logging import get_correlation_id

MAX_PASSWORD_LENGTH = 1024


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or not all(
        len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels
    ):
        raise ValueError("invalid email address format")
    return normalized


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None


class ErrorEnvelope(BaseModel):
    success: bool = False
    error: ErrorBody
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


# Requests


class LoginRequest(CamelModel):
    username: str = Field(..., min_length=1, max_length=150)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("username")
    @classmethod
    def _clean_username(cls, value: str) -> str:
        cleaned = _normalize_unicode(value).strip()
        if not cleaned:
            raise ValueError("username must not be blank")
        return cleaned


class ChallengeCodeRequest(CamelModel):
    challenge_id: str = Field(..., min_length=1, max_length=64)
    code: str = Field(..., min_length=1, max_length=16)

    @field_validator("code")
    @classmethod
    def _strip_code(cls, value: str) -> str:
        return value.strip().replace(" ", "")


class ResendChallengeRequest(CamelModel):
    challenge_id: str = Field(..., min_length=1, max_length=64)


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    confirm_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class TwoFactorSetupRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class TwoFactorDisableRequest(CamelModel):
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


# Responses


class SessionUser(CamelModel):
    id: str
    username: str
    role: str = "admin"


class SuccessResponse(CamelModel):
    success: bool = True


class ChallengeResponse(CamelModel):
    success: bool = True
    challenge_id: str
    delivery: str
    expires_at: datetime
    resend_available_in: int


class LoginResponse(CamelModel):
    success: bool = True
    requires_2fa: bool = Field(False, alias="requires2fa")
    challenge_id: Optional[str] = None
    delivery: Optional[str] = None
    expires_at: Optional[datetime] = None
    resend_available_in: Optional[int] = None
    user: Optional[SessionUser] = None


class SessionResponse(CamelModel):
    success: bool = True
    user: SessionUser


class TwoFactorSettingsResponse(CamelModel):
    success: bool = True
    enabled: bool
    email: Optional[str] = None
    verified: bool
