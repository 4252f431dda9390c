from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


ROLES = ("user", "admin")

# Temporary token kinds map onto (digest, expires_at) column pairs on the user row
TEMPORARY_TOKEN_COLUMNS = {
    "email_verification": ("email_verification_digest", "email_verification_expires_at"),
    "password_reset": ("password_reset_digest", "password_reset_expires_at"),
}


@dataclass
class User:
    id: str
    email: str
    username: Optional[str] = None
    role: str = "user"
    login_type: str = "password"
    provider_id: Optional[str] = None
    avatar_url: Optional[str] = None
    is_email_verified: bool = False
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    email_verification_digest: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    password_reset_digest: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None

    def to_profile(self) -> dict:
        """Public projection; never includes token slots."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "role": self.role,
            "login_type": self.login_type,
            "avatar_url": self.avatar_url,
            "is_email_verified": self.is_email_verified,
            "is_active": self.is_active,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_profile(cls, data: dict) -> "User":
        def _dt(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            id=data["id"],
            email=data["email"],
            username=data.get("username"),
            role=data.get("role", "user"),
            login_type=data.get("login_type", "password"),
            avatar_url=data.get("avatar_url"),
            is_email_verified=bool(data.get("is_email_verified")),
            is_active=bool(data.get("is_active", True)),
            last_login_at=_dt(data.get("last_login_at")),
            created_at=_dt(data.get("created_at")) or utcnow(),
        )


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


class RefreshTokenState(str, Enum):
    LIVE = "live"
    ROTATED = "rotated"
    REVOKED = "revoked"


@dataclass
class RefreshTokenRecord:
    id: str
    user_id: str
    token_digest: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked: bool = False
    revoked_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    @classmethod
    def new(cls, user_id: str, token_digest: str, expires_at: datetime, *, now: datetime | None = None) -> "RefreshTokenRecord":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_digest=token_digest,
            expires_at=expires_at,
            created_at=now or utcnow(),
        )

    @property
    def state(self) -> RefreshTokenState:
        if not self.revoked:
            return RefreshTokenState.LIVE
        if self.revoked_reason == "rotated":
            return RefreshTokenState.ROTATED
        return RefreshTokenState.REVOKED

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now
