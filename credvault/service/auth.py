from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Union

from redis.exceptions import RedisError

from credvault.config import Settings
from credvault.logging import get_logger, track_event
from credvault.service.email import EmailService
from credvault.service.errors import (
    AccountInactive,
    AuthenticationError,
    ConflictError,
    DuplicateEmailOrUsername,
    ForbiddenError,
    InsufficientRole,
    InvalidCredentials,
    NotFound,
    TokenInvalid,
    ValidationError,
)
from credvault.service.identity import ExternalIdentity, IdentityResolver
from credvault.service.passwords import PasswordHasher, check_password_policy
from credvault.service.refresh_ledger import RefreshTokenLedger, TokenPair
from credvault.service.temporary_tokens import TemporaryTokenManager, TokenKind
from credvault.service.tokens import ACCESS, AuthContext, TokenCodec, extract_bearer
from credvault.storage.errors import ConstraintViolation
from credvault.storage.models import ROLES, User, utcnow
from credvault.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

USERNAME_MIN = 3
USERNAME_MAX = 50


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        role: str = "user",
        login_type: str = "password",
        provider_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
        is_email_verified: bool = False,
        is_active: bool = True,
    ) -> User: ...

    def create_password_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        password_algo: str,
        *,
        verification_digest: Optional[str] = None,
        verification_expires_at: Optional[datetime] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def touch_last_login(self, user_id: str, when: datetime) -> None: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class AuthResult:
    user: User
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "AuthResult":
        return cls(
            user=pair.user,
            access_token=pair.access.token,
            access_expires_at=pair.access.expires_at,
            refresh_token=pair.refresh.token,
            refresh_expires_at=pair.refresh.expires_at,
        )


class SessionService:
    """Credential and session lifecycle operations.

    Every user-scoped operation takes an explicit ``AuthContext`` produced by
    :meth:`authenticate`; nothing is read from request-global state. Failures
    are raised as the typed errors listed in each method's docstring.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
        *,
        hasher: PasswordHasher,
        codec: TokenCodec,
        temporary_tokens: TemporaryTokenManager,
        ledger: RefreshTokenLedger,
        identities: IdentityResolver,
        mailer: Optional[EmailService] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.hasher = hasher
        self.codec = codec
        self.temporary_tokens = temporary_tokens
        self.ledger = ledger
        self.identities = identities
        self.mailer = mailer
        self.clock = clock
        self.logger = logger

    # -- identity ----------------------------------------------------------

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Turn an ``Authorization: Bearer`` header into an AuthContext.

        Raises:
            TokenInvalid: header missing or token not a valid access token.
            TokenExpired: access token past its expiry.
        """
        token = extract_bearer(authorization)
        if not token:
            raise TokenInvalid("missing bearer token")
        claims = self.codec.verify(token, token_type=ACCESS)
        return AuthContext(user_id=claims.sub, role=str(claims.role))

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFound("user not found")
        return user

    def _require_active_user(self, user_id: str) -> User:
        user = self._require_user(user_id)
        if not user.is_active:
            raise AccountInactive()
        return user

    # -- registration and login ---------------------------------------------

    async def register(self, email: str, username: str, password: str) -> User:
        """Create a password account and send its verification link.

        Raises:
            ValidationError: malformed email/username or weak password.
            DuplicateEmailOrUsername: email or username already taken.
            ForbiddenError: signups are disabled.
        """
        if not self.settings.allow_signup:
            raise ForbiddenError("signups are disabled")
        email = (email or "").strip().lower()
        username = (username or "").strip()
        if "@" not in email or email.startswith("@") or email.endswith("@"):
            raise ValidationError("invalid email format", detail={"field": "email"})
        if not USERNAME_MIN <= len(username) <= USERNAME_MAX:
            raise ValidationError(
                f"username must be between {USERNAME_MIN} and {USERNAME_MAX} characters",
                detail={"field": "username"},
            )
        check_password_policy(password)

        taken: List[str] = []
        if self.store.get_user_by_email(email):
            taken.append("email")
        if self.store.get_user_by_username(username):
            taken.append("username")
        if taken:
            raise DuplicateEmailOrUsername(
                "user with email or username already exists", detail={"fields": taken}
            )

        pwd_hash, algo = self.hasher.hash_with_algo(password)
        link = self.temporary_tokens.issue(TokenKind.EMAIL_VERIFICATION)
        try:
            # account, credential and verification slot land in one write
            user = self.store.create_password_user(
                email,
                username,
                pwd_hash,
                algo,
                verification_digest=link.digest,
                verification_expires_at=link.expires_at,
            )
        except ConstraintViolation as exc:
            raise DuplicateEmailOrUsername(
                "user with email or username already exists", detail={"fields": exc.fields}
            ) from exc

        await self._deliver(
            self.mailer.send_email_verification if self.mailer else None, user, link.raw
        )
        self.logger.info("user_registered", user_id=user.id)
        track_event("user_registered", user.id, login_type="password")
        return user

    async def login(self, identifier: str, password: str) -> AuthResult:
        """Password login by email (anything containing ``@``) or username.

        Raises:
            InvalidCredentials: unknown account, wrong password or an account
                that signs in through an identity provider.
            AccountInactive: correct password on a deactivated account.
        """
        identifier = (identifier or "").strip()
        if not identifier or not password:
            raise InvalidCredentials()
        if "@" in identifier:
            user = self.store.get_user_by_email(identifier.lower())
        else:
            user = self.store.get_user_by_username(identifier)

        record = None
        if user and user.login_type == "password":
            record = self.store.get_password_record(user.id)
        if not user or not record:
            self.hasher.dummy_verify(password)
            self.logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentials()

        stored_hash, _algo = record
        if not self.hasher.verify(password, stored_hash):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentials()
        if not user.is_active:
            raise AccountInactive()

        if self.hasher.needs_rehash(stored_hash):
            new_hash, algo = self.hasher.hash_with_algo(password)
            self.store.save_password(user.id, new_hash, algo)

        now = self.clock()
        self.store.touch_last_login(user.id, now)
        user.last_login_at = now
        pair = self.ledger.issue_pair(user)
        await self._invalidate_profile(user.id)
        self.logger.info("login_success", user_id=user.id)
        track_event("user_logged_in", user.id, login_type="password")
        return AuthResult.from_pair(pair)

    async def refresh(self, raw_refresh_token: Optional[str]) -> AuthResult:
        """Rotate a refresh token.

        Raises:
            TokenInvalid, RefreshReuseDetected, RefreshTokenExpired,
            AccountInactive: see :meth:`RefreshTokenLedger.rotate`.
        """
        if not raw_refresh_token:
            raise TokenInvalid("missing refresh token")
        pair = self.ledger.rotate(raw_refresh_token)
        track_event("access_token_refreshed", pair.user.id)
        return AuthResult.from_pair(pair)

    async def logout(
        self,
        raw_refresh_token: Optional[str],
        *,
        identity: Optional[AuthContext] = None,
        all_sessions: bool = False,
    ) -> int:
        """Revoke one refresh token, or every session of the caller.

        Idempotent: an unknown or already revoked token revokes nothing.

        Raises:
            AuthenticationError: ``all_sessions`` requested without an identity.
        """
        if all_sessions:
            if identity is None:
                raise AuthenticationError("signing out everywhere requires an access token")
            revoked = self.ledger.revoke_all(identity.user_id, "logout")
            track_event("user_logged_out", identity.user_id, all_sessions=True, revoked=revoked)
            return revoked

        owner = self.ledger.owner_of(raw_refresh_token)
        if identity is not None and owner is not None and owner != identity.user_id:
            self.logger.warning("logout_token_owner_mismatch", user_id=identity.user_id)
            return 0
        revoked = 1 if self.ledger.revoke_one(raw_refresh_token, "logout") else 0
        if revoked:
            track_event("user_logged_out", owner, all_sessions=False)
        return revoked

    # -- email verification ------------------------------------------------

    async def verify_email(self, raw_token: str) -> User:
        """Raises TemporaryTokenInvalidOrExpired."""
        user = self.temporary_tokens.consume(TokenKind.EMAIL_VERIFICATION, raw_token)
        await self._invalidate_profile(user.id)
        track_event("email_verified", user.id)
        return user

    async def resend_email_verification(self, identity: AuthContext) -> None:
        """Issue a fresh verification link, replacing any outstanding one.

        Raises:
            NotFound: the caller's account no longer exists.
            AccountInactive: the account is deactivated.
            ConflictError: the email address is already verified.
        """
        user = self._require_active_user(identity.user_id)
        if user.is_email_verified:
            raise ConflictError("email is already verified")
        raw = self.temporary_tokens.issue_for(user, TokenKind.EMAIL_VERIFICATION)
        await self._deliver(self.mailer.send_email_verification if self.mailer else None, user, raw)
        track_event("resend_email_verification", user.id)

    # -- passwords ---------------------------------------------------------

    async def forgot_password(self, email: str) -> None:
        """Send a reset link if a password account exists; silent otherwise."""
        user = self.store.get_user_by_email((email or "").strip().lower())
        if not user or user.login_type != "password" or not user.is_active:
            self.logger.info("password_reset_skipped")
            return
        raw = self.temporary_tokens.issue_for(user, TokenKind.PASSWORD_RESET)
        await self._deliver(self.mailer.send_password_reset if self.mailer else None, user, raw)
        track_event("password_reset_requested", user.id)

    async def reset_password(self, raw_token: str, new_password: str) -> User:
        """Consume a reset token and set the new password.

        Every refresh token of the account is revoked.

        Raises:
            ValidationError: weak password, or equal to the current one.
            TemporaryTokenInvalidOrExpired: unknown, used or expired token.
        """
        check_password_policy(new_password)
        user = self.temporary_tokens.peek(TokenKind.PASSWORD_RESET, raw_token)
        record = self.store.get_password_record(user.id)
        if record and self.hasher.verify(new_password, record[0]):
            raise ValidationError("new password must be different from the current password")
        pwd_hash, algo = self.hasher.hash_with_algo(new_password)
        user = self.temporary_tokens.consume(
            TokenKind.PASSWORD_RESET, raw_token, password_hash=pwd_hash, password_algo=algo
        )
        self.ledger.revoke_all(user.id, "password_reset")
        await self._invalidate_profile(user.id)
        track_event("password_reset_completed", user.id)
        return user

    async def change_password(
        self, identity: AuthContext, old_password: str, new_password: str
    ) -> AuthResult:
        """Change the caller's password and start a fresh session family.

        Raises:
            NotFound: the caller's account no longer exists.
            AccountInactive: the account is deactivated.
            InvalidCredentials: wrong old password, or no password on the account.
            ValidationError: weak new password, or equal to the old one.
        """
        user = self._require_active_user(identity.user_id)
        record = self.store.get_password_record(user.id)
        if not record or not self.hasher.verify(old_password, record[0]):
            raise InvalidCredentials("old password is incorrect")
        check_password_policy(new_password)
        if new_password == old_password:
            raise ValidationError("new password must be different from the old password")
        pwd_hash, algo = self.hasher.hash_with_algo(new_password)
        self.store.save_password(user.id, pwd_hash, algo)
        self.ledger.revoke_all(user.id, "password_change")
        pair = self.ledger.issue_pair(user)
        track_event("password_changed", user.id)
        return AuthResult.from_pair(pair)

    # -- federated login ---------------------------------------------------

    async def oauth_callback(self, provider: str, identity: ExternalIdentity) -> AuthResult:
        """Sign in (creating the account on first use) with a provider identity.

        Raises:
            ValidationError: the provider supplied no email.
            IdentityProviderConflict: the email belongs to an account with a
                different login method; nothing is created or issued.
            AccountInactive: the linked account is deactivated.
        """
        resolved = self.identities.resolve(provider, identity)
        user = resolved.user
        if not user.is_active:
            raise AccountInactive()
        now = self.clock()
        self.store.touch_last_login(user.id, now)
        user.last_login_at = now
        pair = self.ledger.issue_pair(user)
        if resolved.created:
            track_event("user_registered", user.id, login_type=provider)
        track_event("user_logged_in", user.id, login_type=provider)
        return AuthResult.from_pair(pair)

    # -- administration ----------------------------------------------------

    def _require_admin(self, caller: AuthContext) -> User:
        # role claim in the token may be stale; the store decides
        admin = self.store.get_user(caller.user_id)
        if not admin or not admin.is_active or admin.role != "admin":
            self.logger.warning("admin_required", user_id=caller.user_id)
            raise InsufficientRole()
        return admin

    async def assign_role(self, caller: AuthContext, target_user_id: str, role: str) -> User:
        """Set another user's role; admin only.

        The target's refresh tokens are revoked and their cached profile is
        dropped so the new role takes effect on the next sign-in.

        Raises:
            InsufficientRole: caller is not an active admin (nothing changes).
            ValidationError: role is not one of ``user``/``admin``.
            NotFound: unknown target user.
        """
        self._require_admin(caller)
        if role not in ROLES:
            raise ValidationError("role must be either 'admin' or 'user'", detail={"field": "role"})
        target = self._require_user(target_user_id)
        if target.role == role:
            return target
        updated = self.store.update_user_role(target.id, role)
        if not updated:
            raise NotFound("user not found")
        revoked = self.ledger.revoke_all(updated.id, "role_change")
        await self._invalidate_profile(updated.id)
        self.logger.info(
            "user_role_changed",
            user_id=updated.id,
            previous_role=target.role,
            role=role,
            changed_by=caller.user_id,
            revoked=revoked,
        )
        track_event("user_role_changed", caller.user_id, target_user_id=updated.id, role=role)
        return updated

    async def list_users(self, caller: AuthContext, limit: int = 100) -> List[User]:
        """Raises InsufficientRole unless the caller is an active admin."""
        self._require_admin(caller)
        return self.store.list_users(limit=limit)

    async def current_user(self, identity: AuthContext) -> User:
        """Read-through cached profile of the caller.

        Raises:
            NotFound: the account no longer exists.
            AccountInactive: the account was deactivated.
        """
        cached = await self._cached_profile(identity.user_id)
        if cached:
            user = User.from_profile(cached)
        else:
            user = self._require_user(identity.user_id)
            await self._cache_profile(user)
        if not user.is_active:
            raise AccountInactive()
        return user

    # -- maintenance -------------------------------------------------------

    def purge_expired_refresh_tokens(self) -> int:
        return self.ledger.purge_expired(timedelta(days=self.settings.refresh_token_gc_grace_days))

    # -- collaborators -----------------------------------------------------

    async def _deliver(self, send: Optional[Callable[..., bool]], user: User, raw: str) -> None:
        if send is None:
            self.logger.warning("email_service_missing", user_id=user.id)
            return
        sent = await asyncio.to_thread(send, user.email, raw, name=user.username)
        if not sent:
            # the link is not re-sent automatically; the user can request another
            self.logger.warning("email_delivery_failed", user_id=user.id)

    async def _cached_profile(self, user_id: str) -> Optional[dict]:
        if not self.cache:
            return None
        try:
            return await self.cache.get_user_profile(user_id)
        except (RedisError, OSError) as exc:
            self.logger.warning("profile_cache_read_failed", user_id=user_id, error=str(exc))
            return None

    async def _cache_profile(self, user: User) -> None:
        if not self.cache:
            return
        try:
            await self.cache.set_user_profile(
                user.id, user.to_profile(), self.settings.profile_cache_ttl_seconds
            )
        except (RedisError, OSError) as exc:
            self.logger.warning("profile_cache_write_failed", user_id=user.id, error=str(exc))

    async def _invalidate_profile(self, user_id: str) -> None:
        if not self.cache:
            return
        try:
            await self.cache.invalidate_user_profile(user_id)
        except (RedisError, OSError) as exc:
            self.logger.warning("profile_cache_invalidate_failed", user_id=user_id, error=str(exc))
