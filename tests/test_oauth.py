"""Tests for the Google authorization-code exchange and OAuth state handling."""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from authcore.service.auth import AuthService
from authcore.service.errors import ProviderError, ValidationError
from authcore.service.oauth import (
    GOOGLE_ENDPOINTS,
    GoogleIdentityProvider,
    OAuthStateStore,
)
from authcore.storage.models import Provider
from authcore.storage.redis_cache import _decode_oauth_state, _encode_oauth_state

REDIRECT_URI = "https://app.example.com/oauth/callback"


def google_transport(userinfo=None, token_status=200, token_body=None):
    userinfo = userinfo if userinfo is not None else {
        "id": "g-123",
        "email": "u@x.com",
        "verified_email": True,
        "name": "Uma",
        "picture": "https://pic",
    }
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == GOOGLE_ENDPOINTS["token_url"]:
            body = token_body if token_body is not None else {"access_token": "at-1"}
            return httpx.Response(token_status, json=body)
        if str(request.url) == GOOGLE_ENDPOINTS["userinfo_url"]:
            assert request.headers["Authorization"] == "Bearer at-1"
            return httpx.Response(200, json=userinfo)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def make_provider(**kwargs):
    return GoogleIdentityProvider(
        "client-id", "client-secret", REDIRECT_URI, transport=google_transport(**kwargs)
    )


class TestGoogleIdentityProvider:
    def test_authorization_url(self):
        provider = make_provider()
        url = urlparse(provider.authorization_url("state-1"))
        params = parse_qs(url.query)
        assert url.netloc == "accounts.google.com"
        assert params["state"] == ["state-1"]
        assert params["client_id"] == ["client-id"]
        assert params["redirect_uri"] == [REDIRECT_URI]
        assert params["response_type"] == ["code"]

    @pytest.mark.parametrize(
        "uri", ["ftp://x.com/cb", "http://evil.example.com/cb", "https:///cb"]
    )
    def test_rejects_bad_redirect_uri(self, uri):
        with pytest.raises(ValueError):
            GoogleIdentityProvider("id", "secret", uri)

    def test_from_settings_requires_all_fields(self, settings):
        assert GoogleIdentityProvider.from_settings(settings) is None
        configured = settings.model_copy(
            update={
                "oauth_google_client_id": "id",
                "oauth_google_client_secret": "secret",
                "oauth_redirect_uri": REDIRECT_URI,
            }
        )
        assert GoogleIdentityProvider.from_settings(configured) is not None

    async def test_exchange_code(self):
        provider = make_provider()
        info = await provider.exchange_code("code-1")
        assert info.provider == Provider.GOOGLE
        assert info.external_id == "g-123"
        assert info.email == "u@x.com"
        assert info.email_verified is True
        assert info.avatar == "https://pic"

    async def test_oidc_style_userinfo(self):
        provider = make_provider(
            userinfo={"sub": "g-9", "email": "v@x.com", "email_verified": "true"}
        )
        info = await provider.exchange_code("code-1")
        assert info.external_id == "g-9"
        assert info.email_verified is True
        assert info.name == "v"

    async def test_unverified_flag_propagates(self):
        provider = make_provider(
            userinfo={"id": "g-1", "email": "u@x.com", "verified_email": False, "name": "Uma"}
        )
        info = await provider.exchange_code("code-1")
        assert info.email_verified is False

    async def test_token_endpoint_failure(self):
        provider = make_provider(token_status=400, token_body={"error": "invalid_grant"})
        with pytest.raises(ProviderError) as exc_info:
            await provider.exchange_code("bad-code")
        assert exc_info.value.status_code == 502
        assert exc_info.value.reason == "http_status"

    async def test_missing_access_token(self):
        provider = make_provider(token_body={"token_type": "Bearer"})
        with pytest.raises(ProviderError) as exc_info:
            await provider.exchange_code("code-1")
        assert exc_info.value.reason == "missing_access_token"

    async def test_incomplete_userinfo(self):
        provider = make_provider(userinfo={"id": "g-1"})
        with pytest.raises(ProviderError):
            await provider.exchange_code("code-1")

    async def test_transport_error(self):
        def boom(request):
            raise httpx.ConnectError("unreachable")

        provider = GoogleIdentityProvider(
            "id", "secret", REDIRECT_URI, transport=httpx.MockTransport(boom)
        )
        with pytest.raises(ProviderError) as exc_info:
            await provider.exchange_code("code-1")
        assert exc_info.value.reason == "transport"


class TestOAuthStateStore:
    async def test_state_is_single_use(self):
        states = OAuthStateStore()
        state = await states.issue(Provider.GOOGLE)
        await states.consume(state, Provider.GOOGLE)
        with pytest.raises(ValidationError):
            await states.consume(state, Provider.GOOGLE)

    async def test_unknown_and_missing_state(self):
        states = OAuthStateStore()
        with pytest.raises(ValidationError) as exc_info:
            await states.consume("", Provider.GOOGLE)
        assert exc_info.value.reason == "oauth_state_missing"
        with pytest.raises(ValidationError) as exc_info:
            await states.consume("never-issued", Provider.GOOGLE)
        assert exc_info.value.reason == "oauth_state_invalid"

    async def test_expired_state(self):
        states = OAuthStateStore(ttl=timedelta(seconds=-1))
        state = await states.issue(Provider.GOOGLE)
        with pytest.raises(ValidationError):
            await states.consume(state, Provider.GOOGLE)

    async def test_cache_backed_state(self):
        class FakeCache:
            def __init__(self):
                self.data = {}

            async def set_oauth_state(self, state, provider, expires_at):
                self.data[state] = (provider, expires_at)

            async def pop_oauth_state(self, state):
                return self.data.pop(state, None)

        cache = FakeCache()
        states = OAuthStateStore(cache)
        state = await states.issue(Provider.GOOGLE)
        assert state in cache.data
        await states.consume(state, Provider.GOOGLE)
        assert cache.data == {}

    def test_state_encoding(self):
        expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert _decode_oauth_state(_encode_oauth_state("GOOGLE", expires)) == ("GOOGLE", expires)
        assert _decode_oauth_state(None) is None
        assert _decode_oauth_state("{not json") is None


class TestCodeFlow:
    @pytest.fixture
    def oauth_service(self, store, settings):
        return AuthService(
            store, store, settings, providers={Provider.GOOGLE: make_provider()}
        )

    async def test_start_and_complete(self, oauth_service, store):
        start = await oauth_service.start_federated_login(Provider.GOOGLE)
        assert start["state"] in start["authorization_url"]
        result = await oauth_service.federated_login_with_code(
            Provider.GOOGLE, "code-1", start["state"]
        )
        assert result.identity.provider_id == "g-123"
        assert store.is_session_active(result.refresh_token)

    async def test_replayed_state_rejected(self, oauth_service):
        start = await oauth_service.start_federated_login(Provider.GOOGLE)
        await oauth_service.federated_login_with_code(Provider.GOOGLE, "code-1", start["state"])
        with pytest.raises(ValidationError):
            await oauth_service.federated_login_with_code(
                Provider.GOOGLE, "code-1", start["state"]
            )

    async def test_unconfigured_provider(self, auth_service):
        with pytest.raises(ValidationError) as exc_info:
            await auth_service.start_federated_login(Provider.GOOGLE)
        assert exc_info.value.reason == "provider_not_configured"
