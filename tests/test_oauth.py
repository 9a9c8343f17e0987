"""Tests for Google sign-in with PKCE against a mocked provider."""

import asyncio
import base64
import hashlib
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from coursegate.service.errors import (
    OAuthEmailRequiredError,
    OAuthProviderError,
    OAuthStateInvalidError,
    ServerError,
)
from coursegate.service.oauth import GOOGLE_PROVIDER, GoogleOAuthService

REDIRECT_URI = "https://api.example.com/v1/auth/google/callback"


class FakeGoogle:
    """Minimal token and userinfo endpoints with switchable failures."""

    def __init__(self):
        self.userinfo = {
            "id": "google-123",
            "email": "learner@example.com",
            "verified_email": True,
            "given_name": "Ada",
            "family_name": "Lovelace",
            "picture": "https://example.com/ada.png",
        }
        self.token_status = 200
        self.token_body = {"access_token": "access-abc", "token_type": "Bearer"}
        self.timeout = False
        self.token_requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        if request.url == httpx.URL(GOOGLE_PROVIDER["token_url"]):
            self.token_requests.append(parse_qs(request.content.decode()))
            return httpx.Response(self.token_status, json=self.token_body)
        if request.url == httpx.URL(GOOGLE_PROVIDER["userinfo_url"]):
            assert request.headers["Authorization"] == "Bearer access-abc"
            return httpx.Response(200, json=self.userinfo)
        return httpx.Response(404)


@pytest.fixture
def google():
    return FakeGoogle()


@pytest.fixture
def oauth(runtime, cache, google):
    return GoogleOAuthService(
        cache,
        runtime.customer_auth,
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri=REDIRECT_URI,
        transport=httpx.MockTransport(google.handler),
    )


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestAuthUrl:
    """Building the authorization redirect."""

    @pytest.mark.asyncio
    async def test_auth_url_parameters(self, oauth, redis_client):
        """The URL carries PKCE S256 and a state stored with a ten minute TTL."""
        url = await oauth.get_auth_url()
        params = _query(url)

        assert url.startswith(GOOGLE_PROVIDER["auth_url"])
        assert params["client_id"] == "client-id"
        assert params["redirect_uri"] == REDIRECT_URI
        assert params["response_type"] == "code"
        assert params["scope"] == "openid email profile"
        assert params["code_challenge_method"] == "S256"
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"

        key = f"oauth:state:{params['state']}"
        stored = json.loads(await redis_client.get(key))
        assert stored["provider"] == "google"
        assert 0 < await redis_client.ttl(key) <= 600

        digest = hashlib.sha256(stored["code_verifier"].encode()).digest()
        expected = base64.urlsafe_b64encode(digest).decode().rstrip("=")
        assert params["code_challenge"] == expected

    @pytest.mark.asyncio
    async def test_each_url_has_fresh_state(self, oauth):
        """States are never reused between login attempts."""
        first = _query(await oauth.get_auth_url())
        second = _query(await oauth.get_auth_url())
        assert first["state"] != second["state"]
        assert first["code_challenge"] != second["code_challenge"]

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self, runtime, cache):
        """Missing client credentials is a server-side error."""
        service = GoogleOAuthService(
            cache, runtime.customer_auth, client_id=None, client_secret=None, redirect_uri=None
        )
        assert service.is_configured is False
        with pytest.raises(ServerError):
            await service.get_auth_url()


class TestCallback:
    """Handling the provider redirect."""

    @pytest.mark.asyncio
    async def test_new_user_login(self, oauth, google, store):
        """First sign-in creates a customer, links it and opens a session."""
        state = _query(await oauth.get_auth_url())["state"]

        result = await oauth.handle_callback("auth-code", state)

        assert result.is_new_user is True
        assert result.customer.email == "learner@example.com"
        assert result.customer.first_name == "Ada"
        assert result.customer.password_hash is None
        assert result.session.principal_id == result.customer.id
        assert store.oauth_accounts[("google", "google-123")] == result.customer.id

        form = google.token_requests[0]
        assert form["code"] == ["auth-code"]
        assert form["grant_type"] == ["authorization_code"]
        assert form["redirect_uri"] == [REDIRECT_URI]
        assert len(form["code_verifier"][0]) == 43

    @pytest.mark.asyncio
    async def test_returning_user(self, oauth):
        """A second sign-in finds the linked customer."""
        first = await oauth.handle_callback("c1", _query(await oauth.get_auth_url())["state"])
        second = await oauth.handle_callback("c2", _query(await oauth.get_auth_url())["state"])
        assert second.is_new_user is False
        assert second.customer.id == first.customer.id
        assert second.session.id != first.session.id

    @pytest.mark.asyncio
    async def test_links_existing_password_account(self, oauth, runtime):
        """A password customer with the same email is linked, not duplicated."""
        signed_up = await runtime.customer_auth.signup(
            "learner@example.com", "Str0ng!Passw0rd12"
        )
        result = await oauth.handle_callback("c", _query(await oauth.get_auth_url())["state"])
        assert result.is_new_user is False
        assert result.customer.id == signed_up.principal.id

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, oauth):
        """Replaying a callback with a consumed state fails."""
        state = _query(await oauth.get_auth_url())["state"]
        await oauth.handle_callback("code", state)
        with pytest.raises(OAuthStateInvalidError):
            await oauth.handle_callback("code", state)

    @pytest.mark.asyncio
    async def test_concurrent_callbacks_one_wins(self, oauth):
        """Two racing callbacks with the same state: exactly one succeeds."""
        state = _query(await oauth.get_auth_url())["state"]

        results = await asyncio.gather(
            oauth.handle_callback("code", state),
            oauth.handle_callback("code", state),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], OAuthStateInvalidError)

    @pytest.mark.asyncio
    async def test_unknown_or_empty_state(self, oauth):
        """Unknown and empty states are rejected before any provider call."""
        with pytest.raises(OAuthStateInvalidError):
            await oauth.handle_callback("code", "never-issued")
        with pytest.raises(OAuthStateInvalidError):
            await oauth.handle_callback("code", "")

    @pytest.mark.asyncio
    async def test_state_from_other_provider(self, oauth, cache):
        """A state minted for another provider is not accepted."""
        await cache.set_oauth_state(
            "foreign",
            {
                "provider": "github",
                "code_verifier": "v",
                "redirect_uri": REDIRECT_URI,
                "created_at": "2026-01-01T00:00:00+00:00",
            },
            600,
        )
        with pytest.raises(OAuthStateInvalidError):
            await oauth.handle_callback("code", "foreign")

    @pytest.mark.asyncio
    async def test_missing_code_consumes_state(self, oauth):
        """An empty code fails and the state cannot be retried."""
        state = _query(await oauth.get_auth_url())["state"]
        with pytest.raises(OAuthProviderError):
            await oauth.handle_callback("", state)
        with pytest.raises(OAuthStateInvalidError):
            await oauth.handle_callback("code", state)

    @pytest.mark.asyncio
    async def test_unverified_email(self, oauth, google, store):
        """Unverified Google addresses are refused and nothing is created."""
        google.userinfo["verified_email"] = False
        with pytest.raises(OAuthEmailRequiredError):
            await oauth.handle_callback("c", _query(await oauth.get_auth_url())["state"])
        assert store.customers == {}

    @pytest.mark.asyncio
    async def test_missing_email(self, oauth, google):
        """Accounts without an email address are refused."""
        del google.userinfo["email"]
        with pytest.raises(OAuthEmailRequiredError):
            await oauth.handle_callback("c", _query(await oauth.get_auth_url())["state"])

    @pytest.mark.asyncio
    async def test_token_endpoint_error(self, oauth, google):
        """A non-2xx token response is a provider error."""
        google.token_status = 500
        with pytest.raises(OAuthProviderError):
            await oauth.handle_callback("c", _query(await oauth.get_auth_url())["state"])

    @pytest.mark.asyncio
    async def test_missing_access_token(self, oauth, google):
        """A token response without access_token is a provider error."""
        google.token_body = {"error": "invalid_grant"}
        with pytest.raises(OAuthProviderError):
            await oauth.handle_callback("c", _query(await oauth.get_auth_url())["state"])

    @pytest.mark.asyncio
    async def test_provider_timeout(self, oauth, google):
        """Timeouts surface as provider errors."""
        google.timeout = True
        with pytest.raises(OAuthProviderError):
            await oauth.handle_callback("c", _query(await oauth.get_auth_url())["state"])

    @pytest.mark.asyncio
    async def test_userinfo_without_id(self, oauth, google):
        """A userinfo body without a subject id is unusable."""
        del google.userinfo["id"]
        with pytest.raises(OAuthProviderError):
            await oauth.handle_callback("c", _query(await oauth.get_auth_url())["state"])
