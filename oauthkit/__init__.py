"""oauthkit - OAuth1/OAuth2 authorization flows for web applications.

Main Components:
    OAuth: Facade resolving provider settings and driving flows
    OAuth1Flow / OAuth2Flow: Authorization state machines
    ProviderRegistry: Provider endpoints and protocol versions
    TokenStore: Pluggable token storage
    OAuth1Signer / BearerSigner: Request signing

Quick Start:
    from oauthkit import OAuth, load_config

    oauth = OAuth(load_config())
    handle = oauth.provider("github", callback_url="https://example.com/cb")
    url = await oauth.authorization_url(handle)
    # ... redirect, then on callback:
    token = await oauth.complete_authorization(handle, request_query_params)
"""

from importlib.metadata import version, PackageNotFoundError

from .errors import (
    CallbackError,
    ConfigurationError,
    DuplicateProviderError,
    FlowCancelledError,
    OAuthError,
    ProviderResponseError,
    RequestTokenError,
    SigningError,
    StateMismatchError,
    TokenDecryptionError,
    TokenNotFoundError,
    TokenStoreError,
    TransportError,
    UnknownProviderError,
)

try:
    __version__ = version("oauthkit")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Facade
    "OAuth",
    "FlowHandle",
    # Configuration
    "OAuthConfig",
    "ProviderSettings",
    "load_config",
    "Credentials",
    # Registry
    "ProviderRegistry",
    "ProviderDescriptor",
    "OAuthVersion",
    # Flows
    "OAuthFlow",
    "OAuth1Flow",
    "OAuth2Flow",
    "FlowState",
    "AuthorizationRequest",
    "create_flow",
    # Tokens and storage
    "AccessToken",
    "RequestToken",
    "TokenStore",
    "MemoryTokenStore",
    "EncryptedFileTokenStore",
    "token_key",
    # Signing and transport
    "OAuth1Signer",
    "BearerSigner",
    "HttpxTransport",
    "HttpResponse",
    # Errors
    "OAuthError",
    "ConfigurationError",
    "UnknownProviderError",
    "DuplicateProviderError",
    "SigningError",
    "TokenStoreError",
    "TokenNotFoundError",
    "TokenDecryptionError",
    "ProviderResponseError",
    "RequestTokenError",
    "StateMismatchError",
    "CallbackError",
    "TransportError",
    "FlowCancelledError",
]

_LAZY_IMPORTS = {
    "OAuth": ".manager",
    "FlowHandle": ".manager",
    "OAuthConfig": ".config",
    "ProviderSettings": ".config",
    "load_config": ".config",
    "Credentials": ".credentials",
    "ProviderRegistry": ".registry",
    "ProviderDescriptor": ".registry",
    "OAuthVersion": ".registry",
    "OAuthFlow": ".flow",
    "OAuth1Flow": ".flow",
    "OAuth2Flow": ".flow",
    "FlowState": ".flow",
    "AuthorizationRequest": ".flow",
    "create_flow": ".flow",
    "AccessToken": ".tokens",
    "RequestToken": ".tokens",
    "TokenStore": ".store",
    "MemoryTokenStore": ".store",
    "EncryptedFileTokenStore": ".store",
    "token_key": ".store",
    "OAuth1Signer": ".signer",
    "BearerSigner": ".signer",
    "HttpxTransport": ".transport",
    "HttpResponse": ".transport",
}


# Lazy imports keep `import oauthkit.errors` free of httpx/keyring imports
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    module_name = _LAZY_IMPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    from importlib import import_module

    return getattr(import_module(module_name, __name__), name)
