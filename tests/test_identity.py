"""Federated identity resolution and provider adapters."""

import pytest

from credvault.service.errors import IdentityProviderConflict, ValidationError
from credvault.service.identity import (
    ExternalIdentity,
    GitHubAdapter,
    GoogleAdapter,
    username_from_email,
)


class TestAdapters:
    def test_google_profile(self):
        identity = GoogleAdapter().to_identity(
            {
                "id": "g-123",
                "email": "ana@example.com",
                "verified_email": True,
                "name": "Ana",
                "picture": "https://img.example/ana.png",
            }
        )
        assert identity == ExternalIdentity(
            email="ana@example.com",
            provider_id="g-123",
            display_name="Ana",
            avatar_url="https://img.example/ana.png",
        )

    def test_google_unverified_email_is_dropped(self):
        identity = GoogleAdapter().to_identity(
            {"id": "g-1", "email": "ana@example.com", "verified_email": False}
        )
        assert identity.email is None

    def test_github_falls_back_to_primary_verified_email(self):
        identity = GitHubAdapter().to_identity(
            {"id": 42, "login": "octo", "email": None, "avatar_url": "https://a/x.png"},
            [
                {"email": "old@example.com", "primary": False, "verified": True},
                {"email": "main@example.com", "primary": True, "verified": True},
            ],
        )
        assert identity.email == "main@example.com"
        assert identity.provider_id == "42"
        assert identity.display_name == "octo"

    def test_github_without_id(self):
        with pytest.raises(ValidationError):
            GitHubAdapter().to_identity({"login": "octo"})

    def test_username_from_email(self):
        assert username_from_email("Jane.Doe+x@example.com") == "janedoex"
        assert username_from_email("a@example.com") == "usera"


class TestResolve:
    def test_first_login_creates_verified_user(self, identities, store):
        resolved = identities.resolve(
            "google", ExternalIdentity(email="New@Example.com", provider_id="g-1")
        )
        assert resolved.created is True
        user = resolved.user
        assert user.email == "new@example.com"
        assert user.login_type == "google"
        assert user.provider_id == "g-1"
        assert user.is_email_verified is True
        assert store.get_password_record(user.id) is None

    def test_second_login_returns_same_user(self, identities):
        identity = ExternalIdentity(email="ana@example.com", provider_id="g-1")
        first = identities.resolve("google", identity)
        second = identities.resolve("google", identity)
        assert second.created is False
        assert second.user.id == first.user.id

    def test_password_account_conflict(self, identities, store):
        store.create_user("ana@example.com", "ana")
        with pytest.raises(IdentityProviderConflict) as exc:
            identities.resolve("google", ExternalIdentity(email="ana@example.com", provider_id="g-1"))
        assert "password" in exc.value.message
        assert exc.value.detail["login_type"] == "password"
        assert len(store.list_users()) == 1

    def test_cross_provider_conflict(self, identities):
        identities.resolve("github", ExternalIdentity(email="ana@example.com", provider_id="7"))
        with pytest.raises(IdentityProviderConflict):
            identities.resolve("google", ExternalIdentity(email="ana@example.com", provider_id="g-1"))

    def test_missing_email(self, identities):
        with pytest.raises(ValidationError):
            identities.resolve("github", ExternalIdentity(email=None, provider_id="7"))

    def test_unsupported_provider(self, identities):
        with pytest.raises(ValidationError):
            identities.resolve("myspace", ExternalIdentity(email="a@example.com", provider_id="1"))

    def test_username_collision_gets_suffix(self, identities, store):
        store.create_user("ana@other.com", "ana")
        resolved = identities.resolve(
            "google", ExternalIdentity(email="ana@example.com", provider_id="g-1")
        )
        assert resolved.user.username.startswith("ana-")

    def test_provider_account_with_changed_email(self, identities):
        first = identities.resolve("github", ExternalIdentity(email="old@example.com", provider_id="7"))
        again = identities.resolve("github", ExternalIdentity(email="new@example.com", provider_id="7"))
        assert again.created is False
        assert again.user.id == first.user.id
