from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from credvault.logging import get_logger
from credvault.service.errors import IdentityProviderConflict, ServerError, ValidationError
from credvault.storage.errors import ConstraintViolation
from credvault.storage.models import User

logger = get_logger(__name__)

_USERNAME_UNSAFE = re.compile(r"[^a-z0-9_-]+")
_MAX_CREATE_ATTEMPTS = 5


@dataclass
class ExternalIdentity:
    """Provider-neutral view of a third-party account."""

    email: Optional[str]
    provider_id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass
class ResolvedIdentity:
    user: User
    created: bool


class ProviderAdapter(Protocol):
    name: str

    def to_identity(
        self, userinfo: Dict[str, Any], emails: Optional[List[Dict[str, Any]]] = None
    ) -> ExternalIdentity: ...


class GoogleAdapter:
    name = "google"

    def to_identity(
        self, userinfo: Dict[str, Any], emails: Optional[List[Dict[str, Any]]] = None
    ) -> ExternalIdentity:
        provider_id = userinfo.get("id") or userinfo.get("sub")
        if not provider_id:
            raise ValidationError("google profile has no account id")
        email = userinfo.get("email")
        if email and userinfo.get("verified_email") is False:
            # unverified google addresses cannot claim an account
            email = None
        return ExternalIdentity(
            email=email,
            provider_id=str(provider_id),
            display_name=userinfo.get("name"),
            avatar_url=userinfo.get("picture"),
        )


class GitHubAdapter:
    name = "github"

    def to_identity(
        self, userinfo: Dict[str, Any], emails: Optional[List[Dict[str, Any]]] = None
    ) -> ExternalIdentity:
        if userinfo.get("id") is None:
            raise ValidationError("github profile has no account id")
        email = userinfo.get("email")
        if not email and emails:
            # public email is optional on github; fall back to the verified primary
            email = next(
                (
                    e.get("email")
                    for e in emails
                    if isinstance(e, dict) and e.get("primary") and e.get("verified")
                ),
                None,
            )
        return ExternalIdentity(
            email=email,
            provider_id=str(userinfo["id"]),
            display_name=userinfo.get("name") or userinfo.get("login"),
            avatar_url=userinfo.get("avatar_url"),
        )


PROVIDER_ADAPTERS: Dict[str, ProviderAdapter] = {
    "google": GoogleAdapter(),
    "github": GitHubAdapter(),
}


class IdentityStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_provider(self, login_type: str, provider_id: str) -> Optional[User]: ...

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


def username_from_email(email: str) -> str:
    local = email.split("@", 1)[0].lower()
    cleaned = _USERNAME_UNSAFE.sub("", local)[:40]
    if len(cleaned) < 3:
        cleaned = f"user{cleaned}"
    return cleaned


class IdentityResolver:
    """Map a federated login onto exactly one local account.

    The email address is the join key. An address already owned by an
    account using a different login method is a conflict; no second account
    is ever created for it.
    """

    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    def resolve(self, provider: str, identity: ExternalIdentity) -> ResolvedIdentity:
        """Find or create the local account for ``identity``.

        Raises:
            ValidationError: the provider supplied no email address.
            IdentityProviderConflict: the email belongs to an account with a
                different login type.
        """
        if provider not in PROVIDER_ADAPTERS:
            raise ValidationError(f"unsupported identity provider: {provider}")
        if not identity.email:
            raise ValidationError(
                f"{provider} did not share an email address; make one visible and retry"
            )
        email = identity.email.strip().lower()

        existing = self._lookup(provider, email, identity)
        if existing:
            return ResolvedIdentity(user=existing, created=False)

        base_username = username_from_email(email)
        username = base_username
        for _ in range(_MAX_CREATE_ATTEMPTS):
            try:
                user = self.store.create_user(
                    email,
                    username,
                    role="user",
                    login_type=provider,
                    provider_id=identity.provider_id,
                    avatar_url=identity.avatar_url,
                    is_email_verified=True,
                )
            except ConstraintViolation as exc:
                if "username" in exc.fields:
                    username = f"{base_username}-{secrets.token_hex(3)}"
                    continue
                # lost a race on email or provider id; the winner's row decides
                raced = self._lookup(provider, email, identity)
                if raced:
                    return ResolvedIdentity(user=raced, created=False)
                raced = self.store.get_user_by_provider(provider, identity.provider_id)
                if raced:
                    logger.warning(
                        "identity_provider_email_changed",
                        provider=provider,
                        user_id=raced.id,
                    )
                    return ResolvedIdentity(user=raced, created=False)
                raise
            logger.info("identity_user_created", provider=provider, user_id=user.id)
            return ResolvedIdentity(user=user, created=True)
        raise ServerError("could not allocate a unique username")

    def _lookup(self, provider: str, email: str, identity: ExternalIdentity) -> Optional[User]:
        existing = self.store.get_user_by_email(email)
        if not existing:
            return None
        if existing.login_type != provider:
            logger.info(
                "identity_provider_conflict",
                provider=provider,
                existing_login_type=existing.login_type,
            )
            raise IdentityProviderConflict(
                f"You have previously registered using {existing.login_type}. "
                f"Please sign in with {existing.login_type}.",
                detail={"login_type": existing.login_type},
            )
        if existing.provider_id and existing.provider_id != identity.provider_id:
            logger.warning(
                "identity_provider_id_mismatch", provider=provider, user_id=existing.id
            )
        return existing
