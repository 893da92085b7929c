import contextvars
from datetime import timedelta

import pytest
from starlette.requests import Request

from mobileauth.service.access_tokens import AccessTokenManager
from mobileauth.service.bearer import BearerAuthenticator, normalize_auth_error
from mobileauth.service.errors import (
    InvalidCredentialsError,
    InvalidSignatureError,
    MalformedTokenError,
    TokenExpiredError,
    UserNotFoundError,
)
from mobileauth.storage.errors import StoreUnavailableError
from mobileauth.storage.memory import MemoryStore

SECRET = "bearer-adapter-test-secret-0123456789"
ISSUER = "https://auth.example.test"


def _request(headers=None, query=b"") -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "headers": raw, "query_string": query})


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("alice", "alice@example.com")


@pytest.fixture
def access_tokens(clock):
    return AccessTokenManager(SECRET, ISSUER, timedelta(days=30), now=clock)


@pytest.fixture
def authenticator(access_tokens, memory_store):
    return BearerAuthenticator(access_tokens, memory_store)


class TestResolveUser:
    def test_valid_header(self, authenticator, access_tokens, user):
        token = access_tokens.issue(user.id, user)
        request = _request({"Authorization": f"Bearer {token}"})
        assert authenticator.resolve_user(request) == user.id
        assert authenticator.last_error() is None

    @pytest.mark.parametrize("scheme", ["bearer", "BEARER", "Bearer  "])
    def test_scheme_is_case_insensitive(self, authenticator, access_tokens, user, scheme):
        token = access_tokens.issue(user.id, user)
        request = {"authorization": f"{scheme} {token}"}
        assert authenticator.resolve_user(request) == user.id

    def test_plain_mapping_header_lookup(self, authenticator, access_tokens, user):
        token = access_tokens.issue(user.id, user)
        assert authenticator.resolve_user({"AUTHORIZATION": f"Bearer {token}"}) == user.id

    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": ""}, {"Authorization": "Basic abc"}, {"Authorization": "Bearer"}],
    )
    def test_no_token_records_nothing(self, authenticator, headers):
        assert authenticator.resolve_user(_request(headers)) is None
        assert authenticator.last_error() is None

    def test_tampered_token_recorded_as_401(self, authenticator, access_tokens, user):
        token = access_tokens.issue(user.id, user)
        header_seg, payload_seg, sig_seg = token.split(".")
        flipped = "A" if sig_seg[0] != "A" else "B"
        tampered = f"{header_seg}.{payload_seg}.{flipped}{sig_seg[1:]}"

        assert authenticator.resolve_user(_request({"Authorization": f"Bearer {tampered}"})) is None
        error = authenticator.last_error()
        assert isinstance(error, InvalidSignatureError)
        assert error.status_code == 401

    def test_invalid_token_recorded(self, authenticator):
        assert authenticator.resolve_user(_request({"Authorization": "Bearer junk"})) is None
        error = authenticator.last_error()
        assert isinstance(error, MalformedTokenError)
        assert error.status_code == 401

    def test_wrong_secret_recorded(self, authenticator, user, clock):
        forged = AccessTokenManager("another-secret-value", ISSUER, timedelta(days=1), now=clock)
        token = forged.issue(user.id, user)
        assert authenticator.resolve_user({"Authorization": f"Bearer {token}"}) is None
        assert isinstance(authenticator.last_error(), InvalidSignatureError)

    def test_expired_token_recorded(self, authenticator, access_tokens, user, clock):
        token = access_tokens.issue(user.id, user, ttl=timedelta(minutes=1))
        clock.advance(timedelta(minutes=2))
        assert authenticator.resolve_user({"Authorization": f"Bearer {token}"}) is None
        assert isinstance(authenticator.last_error(), TokenExpiredError)

    def test_missing_subject(self, authenticator, access_tokens, user):
        token = access_tokens.issue("", user)
        assert authenticator.resolve_user({"Authorization": f"Bearer {token}"}) is None
        error = authenticator.last_error()
        assert isinstance(error, MalformedTokenError)
        assert error.message == "token missing subject"

    def test_deleted_user(self, authenticator, access_tokens, memory_store, user):
        token = access_tokens.issue(user.id, user)
        memory_store.delete_user(user.id)
        assert authenticator.resolve_user({"Authorization": f"Bearer {token}"}) is None
        error = authenticator.last_error()
        assert isinstance(error, UserNotFoundError)
        assert error.status_code == 401

    def test_error_cleared_on_next_resolve(self, authenticator, access_tokens, user):
        authenticator.resolve_user({"Authorization": "Bearer junk"})
        assert authenticator.last_error() is not None
        token = access_tokens.issue(user.id, user)
        authenticator.resolve_user({"Authorization": f"Bearer {token}"})
        assert authenticator.last_error() is None

    def test_clear_error(self, authenticator):
        authenticator.resolve_user({"Authorization": "Bearer junk"})
        authenticator.clear_error()
        assert authenticator.last_error() is None

    def test_store_outage_propagates(self, access_tokens, user):
        class DownStore:
            def get_user(self, user_id):
                raise StoreUnavailableError("down")

        authenticator = BearerAuthenticator(access_tokens, DownStore())
        token = access_tokens.issue(user.id, user)
        with pytest.raises(StoreUnavailableError):
            authenticator.resolve_user({"Authorization": f"Bearer {token}"})


class TestQueryFallback:
    def test_query_token_ignored_by_default(self, authenticator, access_tokens, user):
        token = access_tokens.issue(user.id, user)
        request = _request(query=f"jwt_token={token}".encode())
        assert authenticator.resolve_user(request) is None
        assert authenticator.last_error() is None

    def test_query_token_when_enabled(self, access_tokens, memory_store, user):
        authenticator = BearerAuthenticator(
            access_tokens, memory_store, allow_query_token=True
        )
        token = access_tokens.issue(user.id, user)
        request = _request(query=f"jwt_token={token}".encode())
        assert authenticator.resolve_user(request) == user.id

    def test_header_wins_over_query(self, access_tokens, memory_store, user):
        authenticator = BearerAuthenticator(
            access_tokens, memory_store, allow_query_token=True
        )
        token = access_tokens.issue(user.id, user)
        request = _request({"Authorization": f"Bearer {token}"}, query=b"jwt_token=junk")
        assert authenticator.resolve_user(request) == user.id


class TestErrorContext:
    def test_last_error_is_context_local(self, authenticator):
        ctx = contextvars.copy_context()
        ctx.run(authenticator.resolve_user, {"Authorization": "Bearer junk"})
        assert ctx.run(authenticator.last_error) is not None
        assert authenticator.last_error() is None

    def test_normalize_adds_status(self):
        error = InvalidCredentialsError(status_code=0)
        assert normalize_auth_error(error).status_code == 401
