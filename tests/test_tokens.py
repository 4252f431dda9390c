"""Unit tests for the signed token codec."""

import base64
import json

import pytest

from credvault.config import Settings
from credvault.service.errors import TokenExpired, TokenInvalid
from credvault.service.tokens import (
    ACCESS,
    OAUTH_STATE,
    REFRESH,
    TokenCodec,
    extract_bearer,
    keyed_digest,
)


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _claims(token: str) -> dict:
    payload = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))


class TestIssue:
    def test_access_token_carries_subject_and_role(self, codec, clock):
        issued = codec.issue_access_token("user-1", "admin")
        claims = codec.verify(issued.token, token_type=ACCESS)
        assert claims.sub == "user-1"
        assert claims.role == "admin"
        assert claims.typ == ACCESS
        assert issued.expires_at == clock.now + codec.access_ttl
        assert claims.exp == int(issued.expires_at.timestamp())

    def test_refresh_token_has_no_role(self, codec):
        issued = codec.issue_refresh_token("user-1")
        raw = _claims(issued.token)
        assert "role" not in raw
        assert raw["typ"] == REFRESH
        assert raw["jti"] == issued.jti

    def test_refresh_tokens_are_unique_within_one_second(self, codec):
        first = codec.issue_refresh_token("user-1")
        second = codec.issue_refresh_token("user-1")
        assert first.token != second.token
        assert codec.digest(first.token) != codec.digest(second.token)

    def test_default_ttls(self, codec):
        assert codec.access_ttl.total_seconds() == 15 * 60
        assert codec.refresh_ttl.total_seconds() == 7 * 24 * 3600

    def test_from_settings(self):
        settings = Settings(jwt_secret="x" * 40, access_token_ttl_minutes=5)
        codec = TokenCodec.from_settings(settings)
        assert codec.access_ttl.total_seconds() == 300
        assert codec.issuer == settings.jwt_issuer


class TestVerify:
    def test_expired_access_token(self, codec, clock):
        issued = codec.issue_access_token("user-1", "user")
        clock.advance(minutes=15, seconds=31)
        with pytest.raises(TokenExpired):
            codec.verify(issued.token, token_type=ACCESS)

    def test_clock_skew_is_tolerated(self, codec, clock):
        issued = codec.issue_access_token("user-1", "user")
        clock.advance(minutes=15, seconds=10)
        assert codec.verify(issued.token).sub == "user-1"

    def test_allow_expired_returns_claims(self, codec, clock):
        issued = codec.issue_refresh_token("user-1")
        clock.advance(days=8)
        claims = codec.verify(issued.token, token_type=REFRESH, allow_expired=True)
        assert claims.sub == "user-1"
        assert claims.is_expired(clock.now)

    def test_tampered_signature(self, codec):
        token = codec.issue_access_token("user-1", "user").token
        head, payload, sig = token.split(".")
        flipped = sig[:-1] + ("A" if sig[-1] != "A" else "B")
        with pytest.raises(TokenInvalid):
            codec.verify(f"{head}.{payload}.{flipped}")

    def test_tampered_payload(self, codec):
        token = codec.issue_access_token("user-1", "user").token
        head, _payload, sig = token.split(".")
        forged = _claims(token)
        forged["role"] = "admin"
        with pytest.raises(TokenInvalid):
            codec.verify(f"{head}.{_segment(forged)}.{sig}")

    def test_alg_none_rejected(self, codec):
        token = codec.issue_access_token("user-1", "user").token
        forged = f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{token.split('.')[1]}."
        with pytest.raises(TokenInvalid):
            codec.verify(forged)

    def test_wrong_secret(self, codec, clock):
        other = TokenCodec("y" * 40, issuer=codec.issuer, audience=codec.audience, clock=clock)
        with pytest.raises(TokenInvalid):
            codec.verify(other.issue_access_token("user-1", "user").token)

    def test_wrong_audience(self, codec, clock):
        other = TokenCodec(
            "unit-test-secret-key-that-is-long-enough-0123",
            issuer=codec.issuer,
            audience="someone-else",
            clock=clock,
        )
        with pytest.raises(TokenInvalid):
            codec.verify(other.issue_access_token("user-1", "user").token)

    def test_type_mismatch(self, codec):
        refresh = codec.issue_refresh_token("user-1").token
        with pytest.raises(TokenInvalid):
            codec.verify(refresh, token_type=ACCESS)
        state = codec.issue_oauth_state("google").token
        assert codec.verify(state, token_type=OAUTH_STATE).sub == "google"

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", None])
    def test_malformed(self, codec, garbage):
        with pytest.raises(TokenInvalid):
            codec.verify(garbage)


class TestHelpers:
    def test_keyed_digest_is_deterministic_and_keyed(self):
        assert keyed_digest("k1", "raw") == keyed_digest("k1", "raw")
        assert keyed_digest("k1", "raw") != keyed_digest("k2", "raw")
        assert len(keyed_digest("k1", "raw")) == 64

    def test_extract_bearer(self):
        assert extract_bearer("Bearer abc") == "abc"
        assert extract_bearer("bearer abc") == "abc"
        assert extract_bearer("Basic abc") is None
        assert extract_bearer("Bearer ") is None
        assert extract_bearer(None) is None
