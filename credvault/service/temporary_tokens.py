from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Protocol

from credvault.logging import get_logger
from credvault.service.errors import TemporaryTokenInvalidOrExpired
from credvault.service.tokens import keyed_digest
from credvault.storage.models import User, utcnow

logger = get_logger(__name__)

_RAW_TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")


class TokenKind(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class TemporaryToken:
    raw: str
    digest: str
    expires_at: datetime


class TemporaryTokenStore(Protocol):
    def set_temporary_token(
        self, user_id: str, kind: str, digest: str, expires_at: datetime
    ) -> None: ...

    def find_user_by_temporary_token(
        self, kind: str, digest: str, now: datetime
    ) -> Optional[User]: ...

    def consume_temporary_token(
        self,
        kind: str,
        digest: str,
        now: datetime,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> Optional[User]: ...


class TemporaryTokenManager:
    """Single-use, short-lived secrets for email verification and password reset.

    The raw secret only ever leaves the process inside an email link; the
    store keeps a keyed digest. Consumption is one conditional store write
    that clears the slot and applies the effect, so a token works at most
    once. A token issued at T is accepted strictly before ``T + ttl``.
    """

    def __init__(
        self,
        store: TemporaryTokenStore,
        secret: str,
        *,
        ttl: timedelta = timedelta(minutes=20),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self._secret = secret
        self.ttl = ttl
        self.clock = clock

    def _digest(self, raw: str) -> str:
        return keyed_digest(self._secret, raw)

    def issue(self, kind: TokenKind) -> TemporaryToken:
        raw = secrets.token_hex(32)
        return TemporaryToken(raw=raw, digest=self._digest(raw), expires_at=self.clock() + self.ttl)

    def issue_for(self, user: User, kind: TokenKind) -> str:
        """Issue a token, store it in the user's slot and return the raw secret."""
        token = self.issue(kind)
        # overwrites any previous token of the same kind
        self.store.set_temporary_token(user.id, kind.value, token.digest, token.expires_at)
        logger.info("temporary_token_issued", user_id=user.id, kind=kind.value)
        return token.raw

    def _checked_digest(self, raw: str) -> str:
        if not isinstance(raw, str) or not _RAW_TOKEN_RE.match(raw.strip().lower()):
            raise TemporaryTokenInvalidOrExpired()
        return self._digest(raw.strip().lower())

    def peek(self, kind: TokenKind, raw: str) -> User:
        """Return the owner of a live token without consuming it.

        Raises:
            TemporaryTokenInvalidOrExpired: unknown, consumed or expired token.
        """
        digest = self._checked_digest(raw)
        user = self.store.find_user_by_temporary_token(kind.value, digest, self.clock())
        if not user:
            raise TemporaryTokenInvalidOrExpired()
        return user

    def consume(
        self,
        kind: TokenKind,
        raw: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> User:
        """Consume a token and apply its effect atomically.

        Raises:
            TemporaryTokenInvalidOrExpired: unknown, already consumed or expired.
        """
        digest = self._checked_digest(raw)
        if kind is TokenKind.PASSWORD_RESET and not password_hash:
            raise ValueError("password reset consumption requires the new password digest")
        user = self.store.consume_temporary_token(
            kind.value,
            digest,
            self.clock(),
            password_hash=password_hash,
            password_algo=password_algo,
        )
        if not user:
            raise TemporaryTokenInvalidOrExpired()
        logger.info("temporary_token_consumed", user_id=user.id, kind=kind.value)
        return user
