"""Shared fixtures and utilities for oauthkit tests."""

import asyncio
import json
from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet

from oauthkit.config import OAuthConfig, ProviderSettings
from oauthkit.credentials import Credentials
from oauthkit.registry import OAuthVersion, ProviderDescriptor
from oauthkit.store import EncryptedFileTokenStore, MemoryTokenStore
from oauthkit.transport import HttpResponse


# ============================================================================
# Transport double
# ============================================================================


class StubTransport:
    """HttpTransport that records requests and replays canned responses.

    Responses are consumed in order. Setting `block` makes send() wait until
    the event is set, which lets tests race a cancel event against it.
    """

    def __init__(self, *responses: HttpResponse):
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []
        self.block: asyncio.Event | None = None

    def queue(self, response: HttpResponse) -> None:
        self.responses.append(response)

    async def send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: str | None,
        timeout: float | None,
    ) -> HttpResponse:
        self.requests.append(
            {"method": method, "url": url, "headers": headers, "body": body, "timeout": timeout}
        )
        if self.block is not None:
            await self.block.wait()
        if not self.responses:
            raise AssertionError(f"Unexpected request: {method} {url}")
        return self.responses.pop(0)


def json_response(data: dict[str, Any], status: int = 200) -> HttpResponse:
    """Build a JSON provider response."""
    return HttpResponse(
        status=status,
        headers={"Content-Type": "application/json"},
        body=json.dumps(data),
    )


def form_response(body: str, status: int = 200) -> HttpResponse:
    """Build a form-encoded provider response."""
    return HttpResponse(
        status=status,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        body=body,
    )


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def transport() -> StubTransport:
    """A transport with no queued responses."""
    return StubTransport()


@pytest.fixture
def credentials() -> Credentials:
    """Client credentials for a test application."""
    return Credentials("abc", "s3cret", "https://app.example.com/cb")


@pytest.fixture
def oauth2_descriptor() -> ProviderDescriptor:
    """A plain OAuth2 provider."""
    return ProviderDescriptor(
        name="acme",
        version=OAuthVersion.OAUTH2,
        authorize_url="https://acme.example.com/oauth/authorize",
        access_token_url="https://acme.example.com/oauth/token",
        revoke_url="https://acme.example.com/oauth/revoke",
    )


@pytest.fixture
def oauth1_descriptor() -> ProviderDescriptor:
    """A plain OAuth1 provider."""
    return ProviderDescriptor(
        name="photos",
        version=OAuthVersion.OAUTH1,
        request_token_url="https://photos.example.net/initiate",
        authorize_url="https://photos.example.net/authorize",
        access_token_url="https://photos.example.net/token",
    )


@pytest.fixture
def memory_store() -> MemoryTokenStore:
    """An empty in-memory token store."""
    return MemoryTokenStore()


@pytest.fixture
def fixed_keyring() -> Generator[str, None, None]:
    """Patch keyring to hand out one fixed encryption key."""
    key = Fernet.generate_key().decode("ascii")
    with patch("oauthkit.store.keyring.get_password", return_value=key), patch(
        "oauthkit.store.keyring.set_password"
    ):
        yield key


@pytest.fixture
def file_store(tmp_path: Path, fixed_keyring: str) -> EncryptedFileTokenStore:
    """An encrypted file store in a temporary directory."""
    return EncryptedFileTokenStore(store_dir=tmp_path / "tokens")


@pytest.fixture
def github_config() -> OAuthConfig:
    """Config with GitHub credentials, callback and scope."""
    return OAuthConfig(
        providers={
            "github": ProviderSettings(
                name="github",
                client_id="abc",
                client_secret="xyz",
                callback="https://app.example.com/cb",
                scope=["repo"],
            ),
            "twitter": ProviderSettings(
                name="twitter",
                client_id="consumer",
                client_secret="consumer-secret",
                callback="https://app.example.com/twitter/cb",
            ),
        }
    )


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a config file with one provider and return its path."""
    path = tmp_path / "oauth.json"
    path.write_text(
        json.dumps(
            {
                "providers": {
                    "github": {
                        "client_id": "abc",
                        "client_secret": "${TEST_GITHUB_SECRET}",
                        "callback": "https://app.example.com/cb",
                        "scope": ["repo"],
                    }
                }
            }
        )
    )
    return path
