from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from credvault.config import Settings
from credvault.logging import get_logger
from credvault.service.errors import TokenExpired, TokenInvalid
from credvault.storage.models import utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
OAUTH_STATE = "oauth_state"

_OAUTH_STATE_TTL = timedelta(minutes=10)


@dataclass
class AuthContext:
    """Verified identity of the caller, passed explicitly down the call chain."""

    user_id: str
    role: str


@dataclass
class IssuedToken:
    token: str
    expires_at: datetime
    jti: str


@dataclass
class TokenClaims:
    sub: str
    typ: str
    iat: int
    exp: int
    jti: str
    role: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)

    def is_expired(self, now: datetime) -> bool:
        return self.exp <= now.timestamp()


def keyed_digest(secret: str, raw: str) -> str:
    """HMAC-SHA256 of a raw token; the only form in which tokens are stored."""
    return hmac.new(secret.encode(), raw.encode(), hashlib.sha256).hexdigest()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """HS256 signed access, refresh and OAuth state tokens."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        leeway: timedelta = timedelta(seconds=30),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway = leeway
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Callable[[], datetime] = utcnow) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            leeway=timedelta(seconds=settings.token_clock_skew_seconds),
            clock=clock,
        )

    def digest(self, raw: str) -> str:
        return keyed_digest(self._secret, raw)

    def _sign(self, signing_input: str) -> str:
        signature = hmac.new(
            self._secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(signature)

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _issue(self, typ: str, sub: str, ttl: timedelta, **extra: Any) -> IssuedToken:
        now = self.clock()
        expires_at = now + ttl
        jti = uuid.uuid4().hex
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": sub,
            "typ": typ,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": jti,
            **extra,
        }
        return IssuedToken(token=self._encode(payload), expires_at=expires_at, jti=jti)

    def issue_access_token(self, user_id: str, role: str) -> IssuedToken:
        return self._issue(ACCESS, user_id, self.access_ttl, role=role)

    def issue_refresh_token(self, user_id: str) -> IssuedToken:
        return self._issue(REFRESH, user_id, self.refresh_ttl)

    def issue_oauth_state(self, provider: str) -> IssuedToken:
        return self._issue(OAUTH_STATE, provider, _OAUTH_STATE_TTL)

    def verify(
        self,
        token: str,
        *,
        token_type: Optional[str] = None,
        allow_expired: bool = False,
    ) -> TokenClaims:
        """Check signature, issuer, audience, type and expiry.

        Raises:
            TokenExpired: well-formed and correctly signed, but past ``exp``
                (and ``allow_expired`` is false).
            TokenInvalid: anything else that is wrong with the token.
        """
        if not token or not isinstance(token, str):
            raise TokenInvalid()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid()

        # reject anything not signed with HS256 (alg confusion, "none")
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise TokenInvalid()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid()
        if not isinstance(payload, dict):
            raise TokenInvalid()

        if payload.get("iss") != self.issuer:
            raise TokenInvalid()
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenInvalid()

        typ = payload.get("typ")
        if token_type and typ != token_type:
            raise TokenInvalid()
        sub = payload.get("sub")
        if not sub or not isinstance(sub, str):
            raise TokenInvalid()
        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid()
        if typ == ACCESS and not payload.get("role"):
            raise TokenInvalid()

        now_ts = self.clock().timestamp()
        if not allow_expired and exp <= now_ts - self.leeway.total_seconds():
            raise TokenExpired()

        known = {"iss", "aud", "sub", "typ", "iat", "exp", "jti", "role"}
        return TokenClaims(
            sub=sub,
            typ=str(typ),
            iat=iat,
            exp=exp,
            jti=str(payload.get("jti") or ""),
            role=payload.get("role"),
            extra={k: v for k, v in payload.items() if k not in known},
        )


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None
