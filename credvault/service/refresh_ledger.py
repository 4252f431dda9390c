from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from credvault.logging import get_logger, track_event
from credvault.service.errors import (
    AccountInactive,
    RefreshReuseDetected,
    RefreshTokenExpired,
    ServiceError,
    TokenInvalid,
)
from credvault.service.tokens import REFRESH, IssuedToken, TokenClaims, TokenCodec
from credvault.storage.models import RefreshTokenRecord, User, utcnow

logger = get_logger(__name__)


class RefreshLedgerStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token(self, token_digest: str) -> Optional[RefreshTokenRecord]: ...

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self, old_digest: str, successor: RefreshTokenRecord, now: datetime
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, token_digest: str, reason: str, now: datetime) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str, reason: str, now: datetime) -> int: ...

    def purge_refresh_tokens(self, expired_before: datetime) -> int: ...


@dataclass
class TokenPair:
    user: User
    access: IssuedToken
    refresh: IssuedToken


class RefreshTokenLedger:
    """Server-side record of every refresh token ever issued.

    A token is LIVE until it is rotated (exchanged for a successor) or
    revoked. Presenting a token that is no longer LIVE is treated as theft:
    every live token of the owner is revoked, which also kills whatever
    the legitimate holder rotated to.
    """

    def __init__(
        self,
        store: RefreshLedgerStore,
        codec: TokenCodec,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.clock = clock

    def _new_record(self, user_id: str, issued: IssuedToken, now: datetime) -> RefreshTokenRecord:
        return RefreshTokenRecord.new(
            user_id, self.codec.digest(issued.token), issued.expires_at, now=now
        )

    def issue(self, user_id: str) -> IssuedToken:
        issued = self.codec.issue_refresh_token(user_id)
        self.store.insert_refresh_token(self._new_record(user_id, issued, self.clock()))
        return issued

    def issue_pair(self, user: User) -> TokenPair:
        access = self.codec.issue_access_token(user.id, user.role)
        refresh = self.issue(user.id)
        return TokenPair(user=user, access=access, refresh=refresh)

    def _reuse_detected(self, claims: TokenClaims, now: datetime) -> ServiceError:
        revoked = self.store.revoke_user_refresh_tokens(claims.sub, "reuse", now)
        logger.warning("refresh_reuse_detected", user_id=claims.sub, revoked=revoked)
        track_event("refresh_reuse_detected", claims.sub, revoked=revoked)
        return RefreshReuseDetected()

    def rotate(self, raw: str) -> TokenPair:
        """Exchange a live refresh token for a new access/refresh pair.

        Raises:
            TokenInvalid: bad shape, signature, issuer/audience or type, or
                the owning user no longer exists.
            RefreshReuseDetected: the token was already rotated or revoked
                (or lost a concurrent rotation); the owner's family is revoked.
            RefreshTokenExpired: the token is past its expiry.
            AccountInactive: the owner was deactivated; the family is revoked.
        """
        claims = self.codec.verify(raw, token_type=REFRESH, allow_expired=True)
        now = self.clock()
        digest = self.codec.digest(raw)
        record = self.store.get_refresh_token(digest)

        if record is None:
            # signed by us but never recorded, or already garbage collected
            if claims.is_expired(now):
                raise RefreshTokenExpired()
            raise self._reuse_detected(claims, now)
        if record.revoked:
            raise self._reuse_detected(claims, now)
        if record.is_expired(now):
            raise RefreshTokenExpired()

        user = self.store.get_user(record.user_id)
        if user is None:
            raise TokenInvalid()
        if not user.is_active:
            self.store.revoke_user_refresh_tokens(user.id, "deactivated", now)
            raise AccountInactive()

        issued = self.codec.issue_refresh_token(user.id)
        successor = self.store.rotate_refresh_token(
            digest, self._new_record(user.id, issued, now), now
        )
        if successor is None:
            # another request rotated or revoked it first
            raise self._reuse_detected(claims, now)

        access = self.codec.issue_access_token(user.id, user.role)
        logger.info("refresh_rotated", user_id=user.id)
        return TokenPair(user=user, access=access, refresh=issued)

    def revoke_all(self, user_id: str, reason: str = "logout") -> int:
        count = self.store.revoke_user_refresh_tokens(user_id, reason, self.clock())
        logger.info("refresh_family_revoked", user_id=user_id, reason=reason, revoked=count)
        return count

    def revoke_one(self, raw: Optional[str], reason: str = "logout") -> bool:
        """Revoke a single token; unknown or already revoked tokens are a no-op."""
        if not raw:
            return False
        try:
            self.codec.verify(raw, token_type=REFRESH, allow_expired=True)
        except TokenInvalid:
            return False
        return self.store.revoke_refresh_token(self.codec.digest(raw), reason, self.clock())

    def owner_of(self, raw: Optional[str]) -> Optional[str]:
        if not raw:
            return None
        try:
            return self.codec.verify(raw, token_type=REFRESH, allow_expired=True).sub
        except TokenInvalid:
            return None

    def purge_expired(self, grace: timedelta) -> int:
        """Delete records whose expiry plus ``grace`` has passed."""
        purged = self.store.purge_refresh_tokens(self.clock() - grace)
        if purged:
            logger.info("refresh_tokens_purged", purged=purged)
        return purged
