"""Single entry point for applications.

OAuth ties configuration, the provider registry, a token store and an
HTTP transport together. Web applications typically build one OAuth object
at startup and use it from their login and callback handlers:

    oauth = OAuth(config, current_url=lambda: request.url)

    # login handler
    handle = oauth.provider("github", owner=session_id)
    url = await oauth.authorization_url(handle)
    session["oauth_state"] = handle.pending.state
    return redirect(url)

    # callback handler
    handle = oauth.provider("github", owner=session_id)
    token = await oauth.complete_authorization(
        handle, request.query, expected_state=session.pop("oauth_state")
    )
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from .config import OAuthConfig, ProviderSettings
from .errors import ConfigurationError, TokenNotFoundError, TokenStoreError
from .flow import AuthorizationRequest, OAuth2Flow, OAuthFlow, create_flow
from .registry import ENDPOINT_FIELDS, OAuthVersion, ProviderRegistry
from .store import TokenStore, create_store, token_key
from .tokens import AccessToken
from .transport import HttpResponse, HttpTransport, HttpxTransport

logger = logging.getLogger(__name__)


@dataclass
class FlowHandle:
    """A configured flow for one provider and one owner.

    Attributes:
        name: Provider name
        flow: The OAuth1Flow or OAuth2Flow doing the work
        callback_url: Resolved redirect/callback URL
        scope: Requested scope
        owner: User or session id the tokens belong to
        pending: The last AuthorizationRequest issued through this handle
    """

    name: str
    flow: OAuthFlow
    callback_url: str
    scope: list[str] = field(default_factory=list)
    owner: str | None = None
    pending: AuthorizationRequest | None = None

    @property
    def key(self) -> str:
        return self.flow.key

    @property
    def version(self) -> OAuthVersion:
        return self.flow.descriptor.version


class OAuth:
    """Facade over registry, configuration, token store and flows.

    Usage:
        oauth = OAuth(load_config())
        handle = oauth.provider("github", callback_url="https://app/cb")
        url = await oauth.authorization_url(handle)
        ...
        token = await oauth.complete_authorization(handle, callback_params)
    """

    def __init__(
        self,
        config: OAuthConfig | None = None,
        registry: ProviderRegistry | None = None,
        store: TokenStore | None = None,
        transport: HttpTransport | None = None,
        current_url: Callable[[], str] | None = None,
        timeout: float | None = None,
    ):
        """Wire up the collaborators.

        Args:
            config: Provider settings and defaults
            registry: Provider registry (default: built-ins plus config extras)
            store: Token store (default: backend named in config)
            transport: HTTP transport (default: HttpxTransport)
            current_url: Returns the current request URL; last-resort callback
            timeout: Outbound request timeout (default: config http_timeout)
        """
        self.config = config or OAuthConfig()
        # An empty ProviderRegistry is falsy
        if registry is None:
            registry = ProviderRegistry.with_defaults(self.config.extra_providers)
        if store is None:
            store = create_store(self.config.store_backend, self.config.store_dir)
        if transport is None:
            transport = HttpxTransport(timeout=self.config.http_timeout)
        self.registry = registry
        self.store = store
        self.transport = transport
        self.current_url = current_url
        self.timeout = timeout if timeout is not None else self.config.http_timeout

    def _callback_url(self, callback_url: str | None, settings: ProviderSettings) -> str:
        if callback_url:
            return callback_url
        if settings.callback:
            return settings.callback
        if self.current_url is not None:
            return self.current_url()
        raise ConfigurationError(
            f"No callback URL for {settings.name!r}: pass callback_url, configure "
            f"'callback', or provide current_url"
        )

    def provider(
        self,
        name: str,
        callback_url: str | None = None,
        scope: list[str] | None = None,
        owner: str | None = None,
    ) -> FlowHandle:
        """Create a flow handle for a provider.

        Args:
            name: Registered provider name
            callback_url: Redirect URL (default: configured callback, then current URL)
            scope: Requested scope (default: configured scope, then none)
            owner: User/session id keeping concurrent users' tokens apart

        Raises:
            UnknownProviderError: If the provider is not registered
            ConfigurationError: If settings or credentials are missing
        """
        descriptor = self.registry.lookup(name)
        settings = self.config.provider_settings(descriptor.name)

        if settings.endpoints:
            unknown = set(settings.endpoints) - set(ENDPOINT_FIELDS)
            if unknown:
                raise ConfigurationError(
                    f"Unknown endpoints for {descriptor.name!r}: {', '.join(sorted(unknown))}"
                )
            descriptor = descriptor.with_overrides(settings.endpoints)

        resolved_scope = list(scope) if scope is not None else list(settings.scope)
        resolved_callback = self._callback_url(callback_url, settings)

        flow = create_flow(
            descriptor,
            settings.credentials(resolved_callback),
            self.store,
            self.transport,
            scope=resolved_scope,
            owner=owner,
            timeout=self.timeout,
            rsa_private_key=settings.read_rsa_private_key(),
        )
        return FlowHandle(
            name=descriptor.name,
            flow=flow,
            callback_url=resolved_callback,
            scope=resolved_scope,
            owner=owner,
        )

    async def authorization_url(
        self, handle: FlowHandle, cancel_event: asyncio.Event | None = None
    ) -> str:
        """Start authorization and return the URL to redirect the user to.

        The issued state (OAuth2) is kept on handle.pending; callers serving
        the callback from another request must persist it themselves.
        """
        request = await handle.flow.begin_authorization(cancel_event)
        handle.pending = request
        return request.url

    async def complete_authorization(
        self,
        handle: FlowHandle,
        callback_params: Mapping[str, str],
        expected_state: str | None = None,
        code_verifier: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AccessToken:
        """Finish authorization from the callback parameters.

        expected_state and code_verifier default to what handle.pending holds.
        """
        if handle.pending is not None:
            if expected_state is None:
                expected_state = handle.pending.state
            if code_verifier is None:
                code_verifier = handle.pending.code_verifier

        token = await handle.flow.complete_authorization(
            dict(callback_params),
            expected_state=expected_state,
            code_verifier=code_verifier,
            cancel_event=cancel_event,
        )
        handle.pending = None
        return token

    def access_token(self, name: str, owner: str | None = None) -> AccessToken | None:
        """The stored access token for a provider, if any."""
        key = token_key(name, owner)
        if not self.store.has(key):
            return None
        try:
            token = self.store.retrieve(key)
        except TokenNotFoundError:
            return None
        except TokenStoreError as e:
            logger.warning(f"Ignoring unreadable token for {key}: {e}")
            return None
        return token if isinstance(token, AccessToken) else None

    def has_access_token(self, name: str, owner: str | None = None) -> bool:
        """Whether an access token is stored (a pending request token does not count)."""
        return self.access_token(name, owner) is not None

    @staticmethod
    def has_access_input(callback_params: Mapping[str, Any]) -> bool:
        """Whether callback parameters look like a provider's authorization response."""
        return bool(callback_params.get("code")) or (
            bool(callback_params.get("oauth_token")) and bool(callback_params.get("oauth_verifier"))
        )

    async def refresh(
        self, handle: FlowHandle, cancel_event: asyncio.Event | None = None
    ) -> AccessToken:
        """Refresh an OAuth2 access token.

        Raises:
            ConfigurationError: For OAuth1 providers, which have no refresh grant
        """
        if not isinstance(handle.flow, OAuth2Flow):
            raise ConfigurationError(f"Provider {handle.name!r} does not support token refresh")
        return await handle.flow.refresh(cancel_event)

    async def logout(self, handle: FlowHandle, cancel_event: asyncio.Event | None = None) -> bool:
        """Revoke (where supported) and forget the stored token.

        Returns:
            True if a token was removed
        """
        removed = await handle.flow.revoke(cancel_event)
        if removed:
            logger.info(f"Logged out from {handle.key}")
        return removed

    async def request(
        self,
        handle: FlowHandle,
        method: str,
        url: str,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> HttpResponse:
        """Make an authorized API call with the handle's stored token."""
        return await handle.flow.signed_request(method, url, params, headers, cancel_event)

    async def aclose(self) -> None:
        """Close the transport if it holds resources."""
        close = getattr(self.transport, "aclose", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> "OAuth":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
