"""Tests for the OAuth facade."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import StubTransport, form_response, json_response
from oauthkit.config import OAuthConfig, ProviderSettings
from oauthkit.errors import (
    ConfigurationError,
    StateMismatchError,
    TokenNotFoundError,
    UnknownProviderError,
)
from oauthkit.flow import OAuth1Flow, OAuth2Flow
from oauthkit.manager import OAuth
from oauthkit.registry import OAuthVersion, ProviderDescriptor, ProviderRegistry
from oauthkit.store import MemoryTokenStore
from oauthkit.tokens import AccessToken, RequestToken


@pytest.fixture
def oauth(github_config, memory_store, transport) -> OAuth:
    return OAuth(github_config, store=memory_store, transport=transport)


class TestProvider:
    """Tests for building flow handles."""

    def test_oauth2_handle(self, oauth):
        handle = oauth.provider("GitHub")

        assert handle.name == "github"
        assert isinstance(handle.flow, OAuth2Flow)
        assert handle.version is OAuthVersion.OAUTH2
        assert handle.callback_url == "https://app.example.com/cb"
        assert handle.scope == ["repo"]
        assert handle.key == "github"

    def test_oauth1_handle(self, oauth):
        handle = oauth.provider("twitter", owner="u1")

        assert isinstance(handle.flow, OAuth1Flow)
        assert handle.key == "u1::twitter"

    def test_explicit_arguments_win(self, oauth):
        handle = oauth.provider("github", callback_url="https://other/cb", scope=["user"])

        assert handle.callback_url == "https://other/cb"
        assert handle.scope == ["user"]
        assert handle.flow.credentials.callback_url == "https://other/cb"

    def test_explicit_empty_scope(self, oauth):
        assert oauth.provider("github", scope=[]).scope == []

    def test_callback_from_current_url(self, memory_store, transport):
        config = OAuthConfig(providers={"github": ProviderSettings("github", "abc", "xyz")})
        oauth = OAuth(
            config, store=memory_store, transport=transport,
            current_url=lambda: "https://app.example.com/login/github",
        )

        assert oauth.provider("github").callback_url == "https://app.example.com/login/github"

    def test_no_callback_raises(self, memory_store, transport):
        config = OAuthConfig(providers={"github": ProviderSettings("github", "abc", "xyz")})
        oauth = OAuth(config, store=memory_store, transport=transport)

        with pytest.raises(ConfigurationError, match="No callback URL"):
            oauth.provider("github")

    def test_unknown_provider(self, oauth):
        with pytest.raises(UnknownProviderError):
            oauth.provider("myspace")

    def test_unconfigured_provider(self, oauth):
        with pytest.raises(ConfigurationError, match="No settings"):
            oauth.provider("google")

    def test_missing_client_secret(self, memory_store, transport):
        config = OAuthConfig(
            providers={"github": ProviderSettings("github", "abc", "", callback="https://app/cb")}
        )
        oauth = OAuth(config, store=memory_store, transport=transport)

        with pytest.raises(ConfigurationError, match="client_secret"):
            oauth.provider("github")

    def test_endpoint_override(self, github_config, memory_store, transport):
        github_config.providers["github"].endpoints = {
            "authorize_url": "https://ghe.example.com/login/oauth/authorize"
        }
        oauth = OAuth(github_config, store=memory_store, transport=transport)

        handle = oauth.provider("github")

        assert handle.flow.descriptor.authorize_url == "https://ghe.example.com/login/oauth/authorize"
        # Only this handle is affected, not the registry
        assert oauth.registry.lookup("github").authorize_url == "https://github.com/login/oauth/authorize"

    def test_unknown_endpoint_override(self, github_config, memory_store, transport):
        github_config.providers["github"].endpoints = {"pkce": "yes"}
        oauth = OAuth(github_config, store=memory_store, transport=transport)

        with pytest.raises(ConfigurationError, match="Unknown endpoints"):
            oauth.provider("github")

    def test_extra_providers_from_config(self, memory_store, transport):
        config = OAuthConfig(
            providers={"acme": ProviderSettings("acme", "abc", "xyz", callback="https://app/cb")},
            extra_providers={
                "acme": {
                    "version": 2,
                    "authorize_url": "https://acme/authorize",
                    "access_token_url": "https://acme/token",
                }
            },
        )
        oauth = OAuth(config, store=memory_store, transport=transport)

        assert isinstance(oauth.provider("acme").flow, OAuth2Flow)

    def test_injected_empty_registry_is_kept(self, github_config, memory_store, transport):
        registry = ProviderRegistry()
        oauth = OAuth(github_config, registry=registry, store=memory_store, transport=transport)

        assert oauth.registry is registry
        with pytest.raises(UnknownProviderError):
            oauth.provider("github")

        registry.register("github", ProviderDescriptor(
            name="github",
            version=OAuthVersion.OAUTH2,
            authorize_url="https://ghe.example.com/authorize",
            access_token_url="https://ghe.example.com/token",
        ))
        assert oauth.provider("github").flow.descriptor.authorize_url == "https://ghe.example.com/authorize"

    def test_injected_empty_store_is_kept(self, github_config, memory_store, transport):
        oauth = OAuth(github_config, store=memory_store, transport=transport)
        assert oauth.store is memory_store
        assert oauth.transport is transport

    def test_default_store_is_memory(self, github_config):
        assert isinstance(OAuth(github_config).store, MemoryTokenStore)

    def test_timeout_from_config(self, github_config, transport):
        github_config.http_timeout = 5.0
        oauth = OAuth(github_config, transport=transport)

        assert oauth.provider("github").flow.timeout == 5.0


class TestGithubAuthorization:
    """End-to-end OAuth2 authorization through the facade."""

    @pytest.mark.asyncio
    async def test_full_flow(self, oauth, memory_store, transport):
        handle = oauth.provider("github")

        url = await oauth.authorization_url(handle)

        assert url.startswith("https://github.com/login/oauth/authorize?")
        assert "client_id=abc" in url
        assert "scope=repo" in url
        assert f"state={handle.pending.state}" in url
        assert not oauth.has_access_token("github")

        transport.queue(json_response({"access_token": "T1", "token_type": "bearer", "expires_in": 3600}))
        token = await oauth.complete_authorization(
            handle, {"code": "C1", "state": handle.pending.state}
        )

        assert token.token == "T1"
        assert token.expires_at is not None
        expected = datetime.now(timezone.utc) + timedelta(seconds=3600)
        assert abs((token.expires_at - expected).total_seconds()) < 5
        assert oauth.has_access_token("github")
        assert oauth.access_token("github").token == "T1"
        assert handle.pending is None

    @pytest.mark.asyncio
    async def test_state_persisted_across_handles(self, oauth, transport):
        """Test the web pattern: login and callback run in different requests."""
        login = oauth.provider("github", owner="session-1")
        await oauth.authorization_url(login)
        saved_state = login.pending.state

        callback = oauth.provider("github", owner="session-1")
        transport.queue(json_response({"access_token": "T1"}))
        await oauth.complete_authorization(
            callback, {"code": "C1", "state": saved_state}, expected_state=saved_state
        )

        assert oauth.has_access_token("github", owner="session-1")
        assert not oauth.has_access_token("github")

    @pytest.mark.asyncio
    async def test_state_mismatch(self, oauth, memory_store, transport):
        handle = oauth.provider("github")
        await oauth.authorization_url(handle)

        with pytest.raises(StateMismatchError):
            await oauth.complete_authorization(handle, {"code": "C1", "state": "forged"})

        assert transport.requests == []
        assert not oauth.has_access_token("github")

    @pytest.mark.asyncio
    async def test_refresh(self, oauth, memory_store, transport):
        memory_store.save("github", AccessToken(token="T1", refresh_token="R1"))
        transport.queue(json_response({"access_token": "T2"}))

        token = await oauth.refresh(oauth.provider("github"))

        assert token.token == "T2"
        assert oauth.access_token("github").refresh_token == "R1"

    @pytest.mark.asyncio
    async def test_request(self, oauth, memory_store, transport):
        memory_store.save("github", AccessToken(token="T1"))
        transport.queue(json_response({"login": "octocat"}))

        response = await oauth.request(oauth.provider("github"), "GET", "https://api.github.com/user")

        assert response.json() == {"login": "octocat"}
        assert transport.requests[0]["headers"]["Authorization"] == "Bearer T1"

    @pytest.mark.asyncio
    async def test_logout(self, oauth, memory_store):
        memory_store.save("github", AccessToken(token="T1"))
        handle = oauth.provider("github")

        assert await oauth.logout(handle)
        assert not oauth.has_access_token("github")
        assert not await oauth.logout(handle)


class TestTwitterAuthorization:
    """End-to-end OAuth1 authorization through the facade."""

    @pytest.mark.asyncio
    async def test_full_flow(self, oauth, memory_store, transport):
        handle = oauth.provider("twitter")
        transport.queue(form_response(
            "oauth_token=rt&oauth_token_secret=rs&oauth_callback_confirmed=true"
        ))

        url = await oauth.authorization_url(handle)

        assert url == "https://api.twitter.com/oauth/authorize?oauth_token=rt"
        assert isinstance(memory_store.retrieve("twitter"), RequestToken)
        # A pending request token is not an access token
        assert not oauth.has_access_token("twitter")

        callback = {"oauth_token": "rt", "oauth_verifier": "v1"}
        assert OAuth.has_access_input(callback)
        transport.queue(form_response("oauth_token=at&oauth_token_secret=as&screen_name=jack"))
        token = await oauth.complete_authorization(oauth.provider("twitter"), callback)

        assert token.secret == "as"
        assert token.extra["screen_name"] == "jack"
        assert oauth.has_access_token("twitter")

    @pytest.mark.asyncio
    async def test_refresh_not_supported(self, oauth):
        with pytest.raises(ConfigurationError, match="refresh"):
            await oauth.refresh(oauth.provider("twitter"))


class TestAccessToken:
    """Tests for reading stored tokens through the facade."""

    def test_unreadable_entry_is_not_a_token(self, github_config, file_store, transport):
        file_store._write_unlocked({"github": {"kind": "bogus", "token": "T1"}})
        oauth = OAuth(github_config, store=file_store, transport=transport)

        assert oauth.access_token("github") is None
        assert oauth.has_access_token("github") is False

    def test_cleared_between_has_and_retrieve(self, github_config, transport):
        store = MagicMock()
        store.has.return_value = True
        store.retrieve.side_effect = TokenNotFoundError("github")
        oauth = OAuth(github_config, store=store, transport=transport)

        assert oauth.has_access_token("github") is False


class TestHasAccessInput:
    """Tests for recognizing provider callbacks."""

    @pytest.mark.parametrize(
        "params, expected",
        [
            ({"code": "C1", "state": "s"}, True),
            ({"oauth_token": "rt", "oauth_verifier": "v"}, True),
            ({"oauth_token": "rt"}, False),
            ({"state": "s"}, False),
            ({"code": ""}, False),
            ({}, False),
        ],
    )
    def test_detection(self, params, expected):
        assert OAuth.has_access_input(params) is expected


class TestLifecycle:
    """Tests for closing the facade."""

    @pytest.mark.asyncio
    async def test_context_manager_closes_transport(self, github_config, memory_store):
        transport = StubTransport()
        transport.aclose = AsyncMock()

        async with OAuth(github_config, store=memory_store, transport=transport):
            pass

        transport.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_transport_without_aclose(self, oauth):
        await oauth.aclose()
