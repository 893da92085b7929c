"""Tests for access token issue/validate, including clock-driven expiry."""

from datetime import timedelta

import pytest

from mobileauth.service import token_codec
from mobileauth.service.access_tokens import AccessClaims, AccessTokenManager
from mobileauth.service.errors import (
    InvalidIssuerError,
    InvalidSignatureError,
    MalformedTokenError,
    TokenExpiredError,
    TokenMissingError,
    UserNotFoundError,
)
from mobileauth.storage.models import User

SECRET = "access-token-test-secret-0123456789"
ISSUER = "https://auth.example.test"


@pytest.fixture
def profile():
    return User(id="user-1", username="alice", email="alice@example.com", display_name="Alice")


@pytest.fixture
def manager(clock):
    return AccessTokenManager(SECRET, ISSUER, timedelta(days=30), now=clock)


class TestIssue:
    def test_claims_round_trip(self, manager, profile, clock):
        token = manager.issue(profile.id, profile)
        claims = manager.validate(token)

        issued_at = int(clock().timestamp())
        assert claims.subject == "user-1"
        assert claims.issuer == ISSUER
        assert claims.email == "alice@example.com"
        assert claims.display_name == "Alice"
        assert claims.issued_at == issued_at
        assert claims.expires_at == issued_at + int(timedelta(days=30).total_seconds())

    def test_wire_names(self, manager, profile):
        payload = token_codec.decode(manager.issue(profile.id, profile), SECRET)
        assert set(payload) == {"iss", "iat", "exp", "sub", "email", "name"}
        assert isinstance(payload["iat"], int)
        assert isinstance(payload["exp"], int)

    def test_missing_profile(self, manager):
        with pytest.raises(UserNotFoundError):
            manager.issue("ghost", None)

    def test_custom_ttl(self, manager, profile):
        claims = manager.validate(manager.issue(profile.id, profile, ttl=timedelta(minutes=5)))
        assert claims.expires_at - claims.issued_at == 300

    @pytest.mark.parametrize("ttl", [timedelta(0), timedelta(seconds=-1)])
    def test_non_positive_ttl_rejected(self, manager, profile, ttl):
        with pytest.raises(ValueError):
            manager.issue(profile.id, profile, ttl=ttl)

    def test_extra_claims_cannot_override_registered(self, manager, profile):
        token = manager.issue(
            profile.id,
            profile,
            extra_claims={"sub": "admin", "exp": 9999999999, "role": "member"},
        )
        claims = manager.validate(token)
        assert claims.subject == "user-1"
        assert claims.extra == {"role": "member"}

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            AccessTokenManager("", ISSUER, timedelta(days=1))


class TestValidate:
    @pytest.mark.parametrize("token", ["", None])
    def test_empty_token(self, manager, token):
        with pytest.raises(TokenMissingError):
            manager.validate(token)

    def test_empty_token_is_malformed(self, manager):
        with pytest.raises(MalformedTokenError):
            manager.validate("")

    def test_valid_until_expiry(self, manager, profile, clock):
        token = manager.issue(profile.id, profile, ttl=timedelta(hours=1))
        clock.advance(timedelta(hours=1))
        assert manager.validate(token).subject == profile.id

    def test_expired(self, manager, profile, clock):
        token = manager.issue(profile.id, profile, ttl=timedelta(hours=1))
        clock.advance(timedelta(hours=1, seconds=1))
        with pytest.raises(TokenExpiredError):
            manager.validate(token)

    def test_thirty_day_default(self, manager, profile, clock):
        token = manager.issue(profile.id, profile)
        clock.advance(timedelta(days=29))
        assert manager.validate(token)
        clock.advance(timedelta(days=2))
        with pytest.raises(TokenExpiredError):
            manager.validate(token)

    @pytest.mark.parametrize("exp", [None, "tomorrow", True])
    def test_missing_or_bad_expiry(self, manager, exp):
        claims = {"iss": ISSUER, "sub": "user-1", "iat": 0}
        if exp is not None:
            claims["exp"] = exp
        with pytest.raises(MalformedTokenError):
            manager.validate(token_codec.encode(claims, SECRET))

    def test_wrong_issuer(self, profile, clock):
        other = AccessTokenManager(SECRET, "https://other.test", timedelta(days=1), now=clock)
        token = other.issue(profile.id, profile)
        manager = AccessTokenManager(SECRET, ISSUER, timedelta(days=1), now=clock)
        with pytest.raises(InvalidIssuerError):
            manager.validate(token)

    def test_wrong_secret(self, manager, profile, clock):
        other = AccessTokenManager(SECRET + "-rotated", ISSUER, timedelta(days=1), now=clock)
        with pytest.raises(InvalidSignatureError):
            other.validate(manager.issue(profile.id, profile))

    def test_signature_checked_before_expiry(self, manager, profile, clock):
        token = manager.issue(profile.id, profile, ttl=timedelta(seconds=1))
        clock.advance(timedelta(days=1))
        tampered = token[:-2] + ("AA" if token[-2:] != "AA" else "BA")
        with pytest.raises((InvalidSignatureError, MalformedTokenError)):
            manager.validate(tampered)


class TestAccessClaims:
    def test_payload_round_trip(self):
        claims = AccessClaims(
            issuer=ISSUER,
            issued_at=10,
            expires_at=20,
            subject="u",
            email="u@example.com",
            display_name="U",
            extra={"scope": "read"},
        )
        assert AccessClaims.from_payload(claims.to_payload()) == claims
