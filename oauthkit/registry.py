"""Provider descriptors and the registry that maps names to them.

A registry is built once at startup (built-in descriptors plus any extra
providers from configuration) and is read-mostly afterwards.
"""

import logging
import threading
from dataclasses import dataclass, field, fields, replace
from enum import IntEnum
from typing import Any, Iterable, Mapping

from .errors import ConfigurationError, DuplicateProviderError, UnknownProviderError

logger = logging.getLogger(__name__)


class OAuthVersion(IntEnum):
    """Protocol generation a provider speaks."""

    OAUTH1 = 1
    OAUTH2 = 2


SIGNATURE_METHODS = ("HMAC-SHA1", "RSA-SHA1", "PLAINTEXT")
TOKEN_PLACEMENTS = ("header", "query")
TOKEN_AUTH_METHODS = ("body", "basic")

# Descriptor fields an extra-provider entry may override
ENDPOINT_FIELDS = ("request_token_url", "authorize_url", "access_token_url", "revoke_url")


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static description of a provider's endpoints and flow variant."""

    name: str
    version: OAuthVersion
    authorize_url: str
    access_token_url: str
    request_token_url: str | None = None
    scope_separator: str = " "
    signature_method: str = "HMAC-SHA1"
    token_placement: str = "header"
    token_auth: str = "body"
    pkce: bool = False
    revoke_url: str | None = None
    authorize_params: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "version", OAuthVersion(int(self.version)))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Provider {self.name!r} has unsupported OAuth version {self.version!r}"
            ) from e

        if not self.authorize_url or not self.access_token_url:
            raise ConfigurationError(
                f"Provider {self.name!r} needs both authorize_url and access_token_url"
            )
        if self.version is OAuthVersion.OAUTH1 and not self.request_token_url:
            raise ConfigurationError(
                f"OAuth1 provider {self.name!r} needs a request_token_url"
            )
        if self.signature_method not in SIGNATURE_METHODS:
            raise ConfigurationError(
                f"Provider {self.name!r}: unsupported signature method {self.signature_method!r}"
            )
        if self.token_placement not in TOKEN_PLACEMENTS:
            raise ConfigurationError(
                f"Provider {self.name!r}: token_placement must be one of {TOKEN_PLACEMENTS}"
            )
        if self.token_auth not in TOKEN_AUTH_METHODS:
            raise ConfigurationError(
                f"Provider {self.name!r}: token_auth must be one of {TOKEN_AUTH_METHODS}"
            )

    @property
    def is_oauth1(self) -> bool:
        return self.version is OAuthVersion.OAUTH1

    def with_overrides(self, overrides: Mapping[str, Any]) -> "ProviderDescriptor":
        """Return a copy with some fields replaced.

        Raises:
            ConfigurationError: If an override names an unknown field
        """
        known = {f.name for f in fields(self)} - {"name"}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown provider fields for {self.name!r}: {', '.join(sorted(unknown))}"
            )
        return replace(self, **dict(overrides))

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> "ProviderDescriptor":
        """Build a descriptor from a configuration entry."""
        known = {f.name for f in fields(cls)} - {"name"}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown provider fields for {name!r}: {', '.join(sorted(unknown))}"
            )
        if "version" not in data:
            raise ConfigurationError(f"Provider {name!r} must declare an OAuth version")
        try:
            return cls(name=name, **dict(data))
        except TypeError as e:
            raise ConfigurationError(f"Invalid provider definition for {name!r}: {e}") from e


BUILTIN_PROVIDERS: tuple[ProviderDescriptor, ...] = (
    ProviderDescriptor(
        name="github",
        version=OAuthVersion.OAUTH2,
        authorize_url="https://github.com/login/oauth/authorize",
        access_token_url="https://github.com/login/oauth/access_token",
    ),
    ProviderDescriptor(
        name="google",
        version=OAuthVersion.OAUTH2,
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        access_token_url="https://oauth2.googleapis.com/token",
        revoke_url="https://oauth2.googleapis.com/revoke",
        pkce=True,
    ),
    ProviderDescriptor(
        name="facebook",
        version=OAuthVersion.OAUTH2,
        authorize_url="https://www.facebook.com/dialog/oauth",
        access_token_url="https://graph.facebook.com/oauth/access_token",
        scope_separator=",",
    ),
    ProviderDescriptor(
        name="microsoft",
        version=OAuthVersion.OAUTH2,
        authorize_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        access_token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
        pkce=True,
    ),
    ProviderDescriptor(
        name="dropbox",
        version=OAuthVersion.OAUTH2,
        authorize_url="https://www.dropbox.com/oauth2/authorize",
        access_token_url="https://api.dropboxapi.com/oauth2/token",
        revoke_url="https://api.dropboxapi.com/2/auth/token/revoke",
        token_auth="basic",
    ),
    ProviderDescriptor(
        name="linkedin",
        version=OAuthVersion.OAUTH2,
        authorize_url="https://www.linkedin.com/oauth/v2/authorization",
        access_token_url="https://www.linkedin.com/oauth/v2/accessToken",
    ),
    ProviderDescriptor(
        name="twitter",
        version=OAuthVersion.OAUTH1,
        request_token_url="https://api.twitter.com/oauth/request_token",
        authorize_url="https://api.twitter.com/oauth/authorize",
        access_token_url="https://api.twitter.com/oauth/access_token",
    ),
    ProviderDescriptor(
        name="tumblr",
        version=OAuthVersion.OAUTH1,
        request_token_url="https://www.tumblr.com/oauth/request_token",
        authorize_url="https://www.tumblr.com/oauth/authorize",
        access_token_url="https://www.tumblr.com/oauth/access_token",
    ),
    ProviderDescriptor(
        name="flickr",
        version=OAuthVersion.OAUTH1,
        request_token_url="https://www.flickr.com/services/oauth/request_token",
        authorize_url="https://www.flickr.com/services/oauth/authorize",
        access_token_url="https://www.flickr.com/services/oauth/access_token",
    ),
)


class ProviderRegistry:
    """Maps provider names (case-insensitive) to descriptors."""

    def __init__(self, providers: Iterable[ProviderDescriptor] = ()):
        self._providers: dict[str, ProviderDescriptor] = {}
        self._lock = threading.Lock()
        for descriptor in providers:
            self.register(descriptor.name, descriptor)

    @classmethod
    def with_defaults(
        cls, extra_providers: Mapping[str, Mapping[str, Any]] | None = None
    ) -> "ProviderRegistry":
        """Registry pre-loaded with the built-in providers plus configured extras."""
        registry = cls(BUILTIN_PROVIDERS)
        if extra_providers:
            registry.extend(extra_providers)
        return registry

    @staticmethod
    def _normalize(name: str) -> str:
        return name.strip().lower()

    def register(
        self, name: str, descriptor: ProviderDescriptor, override: bool = False
    ) -> None:
        """Register a descriptor under a name.

        Raises:
            DuplicateProviderError: If the name is taken and override is False
        """
        key = self._normalize(name)
        with self._lock:
            if key in self._providers and not override:
                raise DuplicateProviderError(key)
            if descriptor.name != key:
                descriptor = replace(descriptor, name=key)
            self._providers[key] = descriptor
        logger.debug(f"Registered OAuth{int(descriptor.version)} provider {key}")

    def lookup(self, name: str) -> ProviderDescriptor:
        """Get the descriptor for a provider.

        Raises:
            UnknownProviderError: If nothing is registered under the name
        """
        try:
            return self._providers[self._normalize(name)]
        except KeyError:
            raise UnknownProviderError(name) from None

    def extend(self, extra_providers: Mapping[str, Mapping[str, Any]]) -> None:
        """Apply registry extensions from configuration.

        An entry for a known provider overrides its fields (typically its
        endpoints); an entry for a new name must be a complete definition.
        """
        for name, data in extra_providers.items():
            key = self._normalize(name)
            if key in self:
                descriptor = self.lookup(key).with_overrides(data)
                self.register(key, descriptor, override=True)
                logger.debug(f"Overrode provider {key}: {', '.join(sorted(data))}")
            else:
                self.register(key, ProviderDescriptor.from_dict(key, data))

    def names(self) -> list[str]:
        """Sorted list of registered provider names."""
        return sorted(self._providers)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._normalize(name) in self._providers

    def __len__(self) -> int:
        return len(self._providers)
