from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from edugate.service.policy import UserStatus

MAX_PASSWORD_LENGTH = 128

RoleName = Literal["SUPERADMIN", "ADMIN_CENTRE", "ADMIN_CURS"]


class CamelModel(BaseModel):
    """Wire models use camelCase keys; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Envelope(BaseModel):
    """Success envelope shared by every endpoint."""

    success: bool = True
    data: Optional[Any] = None
    message: Optional[str] = None


class ErrorBody(BaseModel):
    success: bool = False
    message: str
    code: str
    stack: Optional[str] = None


def _normalize_unicode(value: str) -> str:
    # drop zero-width and bidi override characters before NFKC
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("L'email ha de ser vàlid")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) < 3 or len(normalized) > 254:
        raise ValueError("L'email ha de ser vàlid")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("L'email ha de ser vàlid")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("L'email ha de ser vàlid")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("L'email ha de ser vàlid")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("L'email ha de ser vàlid")
    return normalized


def _validate_password_strength(value: str, *, min_length: int = 8) -> str:
    if len(value) < min_length:
        raise ValueError(f"La contrasenya ha de tenir almenys {min_length} caràcters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(
            f"La contrasenya ha de tenir com a màxim {MAX_PASSWORD_LENGTH} caràcters"
        )
    return value


def _validate_name(value: str) -> str:
    value = _normalize_unicode(value).strip()
    if len(value) < 2 or len(value) > 50:
        raise ValueError("El nom ha de tenir entre 2 i 50 caràcters")
    return value


class LoginRequest(CamelModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_login_password(cls, value: str) -> str:
        return _validate_password_strength(value, min_length=6)


class TokenRefreshRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class RegisterRequest(CamelModel):
    email: str
    password: str
    first_name: str
    last_name: str
    role: RoleName
    centre_id: Optional[str] = Field(default=None, max_length=64)
    curs_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_register_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)


class PasswordChangeRequest(CamelModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LogCleanupRequest(CamelModel):
    days: int = Field(default=90, ge=1, le=3650)


class UserResponse(CamelModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    status: UserStatus
    centre_id: Optional[str] = None
    curs_id: Optional[str] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None


class LoginResponse(CamelModel):
    user: UserResponse
    access_token: str
    refresh_token: str
    expires_in: int


class RefreshResponse(CamelModel):
    access_token: str
    expires_in: int


class ActivityLogResponse(CamelModel):
    id: str
    action: str
    table_name: str
    record_id: Optional[str] = None
    user_id: Optional[str] = None
    centre_id: Optional[str] = None
    curs_id: Optional[str] = None
    ip_address: str = ""
    user_agent: str = ""
    old_data: Optional[dict] = None
    new_data: Optional[dict] = None
    timestamp: datetime


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    environment: str
