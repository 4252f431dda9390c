from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from credvault.storage.models import User

MAX_PASSWORD_LENGTH = 128

ERROR_CODES = frozenset(
    [
        "validation_error",
        "unauthorized",
        "forbidden",
        "not_found",
        "conflict",
        "rate_limited",
        "server_error",
        "unavailable",
    ]
)

# zero-width joiners/spaces, BOM, and the bidi embedding/isolate controls
_INVISIBLE = re.compile("[\u200b-\u200d\ufeff\u202a-\u202e\u2066-\u2069]")


def _clean_text(value: str) -> str:
    return unicodedata.normalize("NFKC", _INVISIBLE.sub("", value))


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _known_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    """Wrapper for every JSON response; ``request_id`` echoes X-Request-ID."""

    status: Literal["ok", "error"]
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_LOCAL_PART = re.compile(r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}$")
_DOMAIN_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


def _validate_email(value: str) -> str:
    """Lower-case, normalise and syntax-check an address."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    address = _clean_text(value.strip().lower())
    if not 3 <= len(address) <= 254:
        raise ValueError("email address has an invalid length")
    local, _, domain = address.rpartition("@")
    labels = domain.split(".")
    if not _LOCAL_PART.match(local) or len(labels) < 2:
        raise ValueError("invalid email address")
    if not all(_DOMAIN_LABEL.match(label) for label in labels):
        raise ValueError("invalid email address")
    return address


class RegisterRequest(BaseModel):
    email: str
    username: str = Field(..., max_length=64)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return _clean_text(value.strip())


class LoginRequest(BaseModel):
    """Either ``email`` or ``username`` identifies the account."""

    email: Optional[str] = Field(default=None, max_length=254)
    username: Optional[str] = Field(default=None, max_length=64)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    include_refresh_token: bool = False

    @model_validator(mode="after")
    def _require_identifier(self):
        if not (self.email or self.username):
            raise ValueError("email or username is required")
        return self

    @property
    def identifier(self) -> str:
        if self.email:
            return _clean_text(self.email.strip().lower())
        return _clean_text((self.username or "").strip())


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
    include_refresh_token: bool = False


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
    all_sessions: bool = False


class AuthResponse(BaseModel):
    user_id: str
    role: str
    access_token: str
    access_expires_at: datetime
    token_type: str = "bearer"
    refresh_token: Optional[str] = None
    refresh_expires_at: datetime


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., max_length=256)


class PasswordForgotRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    include_refresh_token: bool = False


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str


class UserResponse(BaseModel):
    id: str
    email: str
    username: Optional[str] = None
    role: str
    login_type: str
    avatar_url: Optional[str] = None
    is_email_verified: bool
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            role=user.role,
            login_type=user.login_type,
            avatar_url=user.avatar_url,
            is_email_verified=user.is_email_verified,
            is_active=user.is_active,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class UserListResponse(BaseModel):
    items: List[UserResponse]


class UpdateUserRoleRequest(BaseModel):
    # membership is checked by the service so an unknown role is a 400, not a 422
    role: str = Field(..., max_length=16)
