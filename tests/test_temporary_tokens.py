"""Email-verification and password-reset token lifecycle."""

import re

import pytest

from credvault.service.errors import TemporaryTokenInvalidOrExpired
from credvault.service.temporary_tokens import TokenKind


@pytest.fixture
def user(store):
    return store.create_user("reader@example.com", "reader")


class TestIssue:
    def test_raw_token_is_64_hex_and_only_digest_is_stored(self, temporary_tokens, store, user):
        raw = temporary_tokens.issue_for(user, TokenKind.EMAIL_VERIFICATION)
        assert re.fullmatch(r"[0-9a-f]{64}", raw)
        stored = store.get_user(user.id)
        assert stored.email_verification_digest
        assert stored.email_verification_digest != raw

    def test_ttl_is_twenty_minutes(self, temporary_tokens, clock):
        token = temporary_tokens.issue(TokenKind.PASSWORD_RESET)
        assert (token.expires_at - clock.now).total_seconds() == 20 * 60

    def test_reissue_replaces_previous_token(self, temporary_tokens, user):
        first = temporary_tokens.issue_for(user, TokenKind.EMAIL_VERIFICATION)
        second = temporary_tokens.issue_for(user, TokenKind.EMAIL_VERIFICATION)
        with pytest.raises(TemporaryTokenInvalidOrExpired):
            temporary_tokens.consume(TokenKind.EMAIL_VERIFICATION, first)
        assert temporary_tokens.consume(TokenKind.EMAIL_VERIFICATION, second).id == user.id

    def test_kinds_do_not_cross(self, temporary_tokens, user):
        raw = temporary_tokens.issue_for(user, TokenKind.EMAIL_VERIFICATION)
        with pytest.raises(TemporaryTokenInvalidOrExpired):
            temporary_tokens.peek(TokenKind.PASSWORD_RESET, raw)


class TestExpiry:
    def test_accepted_just_before_expiry(self, temporary_tokens, clock, user):
        raw = temporary_tokens.issue_for(user, TokenKind.EMAIL_VERIFICATION)
        clock.advance(minutes=19, seconds=59)
        verified = temporary_tokens.consume(TokenKind.EMAIL_VERIFICATION, raw)
        assert verified.is_email_verified is True

    def test_rejected_at_exact_expiry(self, temporary_tokens, clock, user):
        raw = temporary_tokens.issue_for(user, TokenKind.EMAIL_VERIFICATION)
        clock.advance(minutes=20)
        with pytest.raises(TemporaryTokenInvalidOrExpired):
            temporary_tokens.consume(TokenKind.EMAIL_VERIFICATION, raw)

    def test_rejected_after_expiry(self, temporary_tokens, clock, user, store):
        raw = temporary_tokens.issue_for(user, TokenKind.EMAIL_VERIFICATION)
        clock.advance(minutes=20, seconds=1)
        with pytest.raises(TemporaryTokenInvalidOrExpired):
            temporary_tokens.consume(TokenKind.EMAIL_VERIFICATION, raw)
        assert store.get_user(user.id).is_email_verified is False


class TestConsume:
    def test_single_use(self, temporary_tokens, user):
        raw = temporary_tokens.issue_for(user, TokenKind.EMAIL_VERIFICATION)
        temporary_tokens.consume(TokenKind.EMAIL_VERIFICATION, raw)
        with pytest.raises(TemporaryTokenInvalidOrExpired):
            temporary_tokens.consume(TokenKind.EMAIL_VERIFICATION, raw)

    def test_consumption_clears_slot(self, temporary_tokens, store, user):
        raw = temporary_tokens.issue_for(user, TokenKind.EMAIL_VERIFICATION)
        temporary_tokens.consume(TokenKind.EMAIL_VERIFICATION, raw)
        stored = store.get_user(user.id)
        assert stored.email_verification_digest is None
        assert stored.email_verification_expires_at is None

    def test_password_reset_writes_new_digest(self, temporary_tokens, store, user, hasher):
        raw = temporary_tokens.issue_for(user, TokenKind.PASSWORD_RESET)
        new_hash, algo = hasher.hash_with_algo("N3w&Password")
        temporary_tokens.consume(
            TokenKind.PASSWORD_RESET, raw, password_hash=new_hash, password_algo=algo
        )
        stored_hash, stored_algo = store.get_password_record(user.id)
        assert hasher.verify("N3w&Password", stored_hash)
        assert stored_algo == "argon2id"

    def test_password_reset_requires_digest(self, temporary_tokens, user):
        raw = temporary_tokens.issue_for(user, TokenKind.PASSWORD_RESET)
        with pytest.raises(ValueError):
            temporary_tokens.consume(TokenKind.PASSWORD_RESET, raw)

    def test_peek_does_not_consume(self, temporary_tokens, user):
        raw = temporary_tokens.issue_for(user, TokenKind.EMAIL_VERIFICATION)
        assert temporary_tokens.peek(TokenKind.EMAIL_VERIFICATION, raw).id == user.id
        assert temporary_tokens.consume(TokenKind.EMAIL_VERIFICATION, raw).id == user.id

    @pytest.mark.parametrize("raw", ["", "xyz", "g" * 64, "a" * 63, None])
    def test_malformed_input_rejected(self, temporary_tokens, raw):
        with pytest.raises(TemporaryTokenInvalidOrExpired):
            temporary_tokens.consume(TokenKind.EMAIL_VERIFICATION, raw)

    def test_unknown_token_rejected(self, temporary_tokens):
        with pytest.raises(TemporaryTokenInvalidOrExpired):
            temporary_tokens.consume(TokenKind.EMAIL_VERIFICATION, "a" * 64)
