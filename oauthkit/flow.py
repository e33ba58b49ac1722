"""Authorization flows for OAuth1 and OAuth2 providers.

OAuth1 (RFC 5849):
1. Signed POST to the request-token endpoint, store the RequestToken
2. Redirect the user to authorize_url?oauth_token=...
3. Callback brings oauth_token + oauth_verifier
4. Signed POST to the access-token endpoint, store the AccessToken

OAuth2 (RFC 6749 authorization code grant):
1. Redirect the user to authorize_url with client_id, redirect_uri, scope
   and a random state
2. Callback brings code + state
3. POST the code to the token endpoint, store the AccessToken

Each engine call performs at most one outbound HTTP request and writes to
the token store only after the provider's response has been parsed, so a
failed call can simply be made again.
"""

import asyncio
import base64
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .credentials import Credentials
from .errors import (
    CallbackError,
    ConfigurationError,
    FlowCancelledError,
    ProviderResponseError,
    RequestTokenError,
    StateMismatchError,
    TokenNotFoundError,
    TransportError,
)
from .pkce import generate_pkce_pair, generate_state
from .registry import OAuthVersion, ProviderDescriptor
from .signer import RequestSigner, create_signer, percent_encode
from .store import TokenStore, token_key
from .tokens import AccessToken, RequestToken
from .transport import DEFAULT_TIMEOUT, HttpResponse, HttpTransport

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

# Methods whose parameters travel in the query string
QUERY_METHODS = ("GET", "HEAD", "DELETE")


class FlowState(str, Enum):
    """Where an authorization attempt currently stands."""

    IDLE = "idle"
    REQUEST_TOKEN_PENDING = "request_token_pending"
    AWAITING_USER_AUTHORIZATION = "awaiting_user_authorization"
    CALLBACK_RECEIVED = "callback_received"
    AUTHORIZED = "authorized"


@dataclass
class AuthorizationRequest:
    """Where to send the user, plus what the caller must keep for the callback.

    Attributes:
        url: Provider authorization URL to redirect the user to
        state: OAuth2 CSRF state; persist it and pass it back on completion
        code_verifier: PKCE verifier for providers that use PKCE
    """

    url: str
    state: str | None = None
    code_verifier: str | None = None


def append_query(url: str, params: Mapping[str, str]) -> str:
    """Add parameters to a URL, keeping any query it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


def _constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class OAuthFlow(ABC):
    """One provider's authorization flow for one user.

    Collaborators are passed in explicitly: the descriptor and credentials
    define what to talk to, the store keeps tokens between requests, the
    transport sends HTTP requests.
    """

    version: OAuthVersion

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        credentials: Credentials,
        store: TokenStore,
        transport: HttpTransport,
        signer: RequestSigner | None = None,
        scope: list[str] | None = None,
        owner: str | None = None,
        timeout: float | None = DEFAULT_TIMEOUT,
        rsa_private_key: Union[str, bytes, None] = None,
    ):
        self.descriptor = descriptor
        self.credentials = credentials
        self.store = store
        self.transport = transport
        self.signer = signer or create_signer(descriptor, credentials, rsa_private_key)
        self.scope = list(scope or [])
        self.owner = owner
        self.timeout = timeout
        self.state = FlowState.IDLE

    @property
    def service(self) -> str:
        return self.descriptor.name

    @property
    def key(self) -> str:
        """Token store key for this service and owner."""
        return token_key(self.descriptor.name, self.owner)

    async def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: str | None,
        cancel_event: asyncio.Event | None = None,
    ) -> HttpResponse:
        """Send one request, aborting it if cancel_event gets set.

        Raises:
            FlowCancelledError: If cancel_event is set before the response arrives
            TransportError: On network failures (from the transport)
        """
        if cancel_event is None:
            return await self.transport.send(method, url, headers, body, self.timeout)

        if cancel_event.is_set():
            raise FlowCancelledError(f"{method} {url} cancelled before it was sent")

        send_task = asyncio.ensure_future(
            self.transport.send(method, url, headers, body, self.timeout)
        )
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {send_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (send_task, cancel_task):
                if not task.done():
                    task.cancel()

        if send_task in done:
            return send_task.result()
        raise FlowCancelledError(f"{method} {url} cancelled")

    @staticmethod
    def _error_fields(response: HttpResponse) -> dict[str, Any]:
        try:
            return response.parse()
        except ValueError:
            return {}

    def _parse_response(
        self, response: HttpResponse, what: str, error_class: type = ProviderResponseError
    ) -> dict[str, Any]:
        """Check the status and parse a token endpoint response.

        Raises:
            ProviderResponseError: (or error_class) on non-2xx or unparseable bodies
        """
        if not response.ok:
            raise error_class.from_response(
                f"{what} failed", response.status, response.body, self._error_fields(response)
            )
        try:
            return response.parse()
        except ValueError as e:
            raise error_class(
                f"{what} returned a malformed response: {e}",
                status=response.status,
                body=response.body,
            ) from e

    def access_token(self) -> AccessToken | None:
        """The stored access token for this flow, if any."""
        if not self.store.has(self.key):
            return None
        try:
            token = self.store.retrieve(self.key)
        except TokenNotFoundError:
            return None
        return token if isinstance(token, AccessToken) else None

    def has_access_token(self) -> bool:
        return self.access_token() is not None

    def _require_access_token(self) -> AccessToken:
        token = self.access_token()
        if token is None:
            raise TokenNotFoundError(self.key, f"No access token stored for {self.key!r}")
        return token

    @abstractmethod
    async def begin_authorization(
        self, cancel_event: asyncio.Event | None = None
    ) -> AuthorizationRequest:
        """Start an authorization attempt and return where to send the user."""

    @abstractmethod
    async def complete_authorization(
        self,
        callback_params: Mapping[str, str],
        expected_state: str | None = None,
        code_verifier: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AccessToken:
        """Handle the provider's callback and obtain an access token."""

    async def revoke(self, cancel_event: asyncio.Event | None = None) -> bool:
        """Forget the stored token for this flow.

        Returns:
            True if a token was removed
        """
        return self.store.clear(self.key)

    async def signed_request(
        self,
        method: str,
        url: str,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> HttpResponse:
        """Call a provider API with the stored access token.

        Parameters go in the query string for GET/HEAD/DELETE and in a
        form-encoded body otherwise. The response is returned whatever its
        status; interpreting API errors is up to the caller.

        Raises:
            TokenNotFoundError: If no access token is stored
            SigningError: If the token cannot be used for signing
        """
        token = self._require_access_token()
        method = method.upper()
        request_headers = dict(headers or {})
        body = None
        body_params: Mapping[str, str] | None = None

        if params and method in QUERY_METHODS:
            url = append_query(url, params)
        elif params:
            body_params = params
            body = urlencode(list(params.items()))
            request_headers.setdefault("Content-Type", FORM_CONTENT_TYPE)

        signed = self.signer.sign(method, url, params=body_params, token=token)
        request_headers.update(signed.headers)
        return await self._send(method, signed.url, request_headers, body, cancel_event)


class OAuth1Flow(OAuthFlow):
    """Three-legged OAuth1 flow with request tokens and signed exchanges."""

    version = OAuthVersion.OAUTH1

    async def begin_authorization(
        self, cancel_event: asyncio.Event | None = None
    ) -> AuthorizationRequest:
        """Obtain a request token and build the authorization URL.

        Raises:
            RequestTokenError: On non-2xx responses or an unconfirmed callback
        """
        url = self.descriptor.request_token_url
        if not url:
            raise ConfigurationError(f"OAuth1 provider {self.service!r} has no request_token_url")

        self.state = FlowState.REQUEST_TOKEN_PENDING
        try:
            signed = self.signer.sign(
                "POST", url, oauth_params={"oauth_callback": self.credentials.callback_url}
            )
            headers = {**signed.headers, "Content-Type": FORM_CONTENT_TYPE}
            response = await self._send("POST", signed.url, headers, "", cancel_event)
            data = self._parse_response(response, "Request token request", RequestTokenError)

            if not data.get("oauth_token") or not data.get("oauth_token_secret"):
                raise RequestTokenError(
                    "Request token response is missing oauth_token or oauth_token_secret",
                    status=response.status,
                    body=response.body,
                )
            if data.get("oauth_callback_confirmed") != "true":
                raise RequestTokenError(
                    "Provider did not confirm the callback URL",
                    status=response.status,
                    body=response.body,
                )
        except BaseException:
            self.state = FlowState.IDLE
            raise

        request_token = RequestToken(
            token=data["oauth_token"],
            secret=data["oauth_token_secret"],
            callback_confirmed=True,
        )
        # Overwrites any earlier attempt: request tokens are single-use
        self.store.save(self.key, request_token)
        self.state = FlowState.AWAITING_USER_AUTHORIZATION

        logger.debug(f"Obtained request token for {self.key}")
        return AuthorizationRequest(
            url=append_query(self.descriptor.authorize_url, {"oauth_token": request_token.token})
        )

    async def complete_authorization(
        self,
        callback_params: Mapping[str, str],
        expected_state: str | None = None,
        code_verifier: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AccessToken:
        """Exchange the authorized request token for an access token.

        Raises:
            CallbackError: If oauth_token/oauth_verifier are missing or access was denied
            TokenNotFoundError: If no request token is pending
            StateMismatchError: If the callback's oauth_token is not the pending one
            ProviderResponseError: On non-2xx or malformed responses
        """
        if callback_params.get("denied"):
            raise CallbackError(f"Authorization denied for {self.service}")

        oauth_token = callback_params.get("oauth_token")
        verifier = callback_params.get("oauth_verifier")
        if not oauth_token or not verifier:
            raise CallbackError("Callback is missing oauth_token or oauth_verifier")

        stored = self.store.retrieve(self.key)
        if not isinstance(stored, RequestToken):
            raise TokenNotFoundError(self.key, f"No pending request token for {self.key!r}")

        if not _constant_time_equals(stored.token, oauth_token):
            logger.warning(
                f"oauth_token in callback for {self.key} does not match the pending "
                f"request token - possible CSRF or session fixation attempt"
            )
            raise StateMismatchError("Callback oauth_token does not match the pending request token")

        self.state = FlowState.CALLBACK_RECEIVED
        signed = self.signer.sign(
            "POST",
            self.descriptor.access_token_url,
            token=stored,
            oauth_params={"oauth_verifier": verifier},
        )
        headers = {**signed.headers, "Content-Type": FORM_CONTENT_TYPE}
        response = await self._send("POST", signed.url, headers, "", cancel_event)
        data = self._parse_response(response, "Access token request")

        if not data.get("oauth_token") or not data.get("oauth_token_secret"):
            raise ProviderResponseError(
                "Access token response is missing oauth_token or oauth_token_secret",
                status=response.status,
                body=response.body,
            )

        access_token = AccessToken(
            token=data["oauth_token"],
            secret=data["oauth_token_secret"],
            token_type="OAuth",
            extra={
                k: v for k, v in data.items() if k not in ("oauth_token", "oauth_token_secret")
            },
        )
        # Replaces the consumed request token
        self.store.save(self.key, access_token)
        self.state = FlowState.AUTHORIZED

        logger.info(f"Authorized {self.key} (OAuth1)")
        return access_token


class OAuth2Flow(OAuthFlow):
    """Authorization code grant with optional PKCE, refresh and revocation."""

    version = OAuthVersion.OAUTH2

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._issued_state: str | None = None
        self._code_verifier: str | None = None

    def _client_auth(self, form: dict[str, str], headers: dict[str, str]) -> None:
        """Authenticate the client at the token endpoint (RFC 6749 Section 2.3.1)."""
        if self.descriptor.token_auth == "basic":
            pair = (
                f"{percent_encode(self.credentials.client_id)}:"
                f"{percent_encode(self.credentials.client_secret)}"
            )
            headers["Authorization"] = "Basic " + base64.b64encode(pair.encode("utf-8")).decode("ascii")
        else:
            form["client_id"] = self.credentials.client_id
            form["client_secret"] = self.credentials.client_secret

    async def _token_request(
        self, form: dict[str, str], what: str, cancel_event: asyncio.Event | None
    ) -> AccessToken:
        headers = {"Accept": "application/json", "Content-Type": FORM_CONTENT_TYPE}
        self._client_auth(form, headers)

        response = await self._send(
            "POST", self.descriptor.access_token_url, headers, urlencode(form), cancel_event
        )
        data = self._parse_response(response, what)

        # Some providers answer 200 with an error payload
        if data.get("error") or not data.get("access_token"):
            raise ProviderResponseError.from_response(
                f"{what} did not return an access token", response.status, response.body, data
            )
        try:
            return AccessToken.from_token_response(data)
        except (TypeError, ValueError) as e:
            raise ProviderResponseError(
                f"{what} returned a malformed response: {e}",
                status=response.status,
                body=response.body,
            ) from e

    async def begin_authorization(
        self, cancel_event: asyncio.Event | None = None
    ) -> AuthorizationRequest:
        """Build the authorization URL with a fresh state value."""
        state = generate_state()
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": self.credentials.client_id,
            "redirect_uri": self.credentials.callback_url,
        }
        if self.scope:
            params["scope"] = self.descriptor.scope_separator.join(self.scope)
        params["state"] = state

        code_verifier = None
        if self.descriptor.pkce:
            pkce = generate_pkce_pair()
            params["code_challenge"] = pkce.challenge
            params["code_challenge_method"] = pkce.method
            code_verifier = pkce.verifier

        params.update(self.descriptor.authorize_params)

        self._issued_state = state
        self._code_verifier = code_verifier
        self.state = FlowState.AWAITING_USER_AUTHORIZATION

        return AuthorizationRequest(
            url=append_query(self.descriptor.authorize_url, params),
            state=state,
            code_verifier=code_verifier,
        )

    async def complete_authorization(
        self,
        callback_params: Mapping[str, str],
        expected_state: str | None = None,
        code_verifier: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AccessToken:
        """Exchange the authorization code for an access token.

        Args:
            callback_params: Query parameters of the redirect back to us
            expected_state: State issued by begin_authorization (defaults to
                the one issued by this flow object)
            code_verifier: PKCE verifier (defaults to the one from this flow object)
            cancel_event: Set to abort the token request

        Raises:
            CallbackError: If the provider reported an error or no code was sent
            StateMismatchError: If the returned state differs from the issued one
            ProviderResponseError: On non-2xx or malformed responses
        """
        if expected_state is None:
            expected_state = self._issued_state
        if code_verifier is None:
            code_verifier = self._code_verifier

        if callback_params.get("error"):
            raise CallbackError(
                f"Authorization failed: {callback_params.get('error')} - "
                f"{callback_params.get('error_description', '')}"
            )

        if expected_state is not None:
            if not _constant_time_equals(callback_params.get("state") or "", expected_state):
                logger.warning(
                    f"State mismatch in callback for {self.key} - possible CSRF attack"
                )
                raise StateMismatchError("State mismatch in callback - possible CSRF attack")
        else:
            logger.warning(f"No state to verify for {self.key}; callback accepted without CSRF check")

        code = callback_params.get("code")
        if not code:
            raise CallbackError("No authorization code in callback")

        self.state = FlowState.CALLBACK_RECEIVED
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.credentials.callback_url,
        }
        if code_verifier:
            form["code_verifier"] = code_verifier

        access_token = await self._token_request(form, "Token exchange", cancel_event)

        self.store.save(self.key, access_token)
        self._issued_state = None
        self._code_verifier = None
        self.state = FlowState.AUTHORIZED

        logger.info(f"Authorized {self.key} (OAuth2)")
        return access_token

    async def refresh(self, cancel_event: asyncio.Event | None = None) -> AccessToken:
        """Exchange the stored refresh token for a new access token.

        Raises:
            TokenNotFoundError: If no access token or refresh token is stored
            ProviderResponseError: If the provider rejects the refresh
        """
        current = self._require_access_token()
        if not current.has_refresh_token():
            raise TokenNotFoundError(self.key, f"No refresh token stored for {self.key!r}")

        form = {
            "grant_type": "refresh_token",
            "refresh_token": current.refresh_token or "",
        }
        new_token = await self._token_request(form, "Token refresh", cancel_event)

        # Providers that do not rotate refresh tokens omit it from the response
        if not new_token.refresh_token:
            new_token.refresh_token = current.refresh_token

        self.store.save(self.key, new_token)
        logger.info(f"Token refreshed for {self.key}")
        return new_token

    async def revoke(self, cancel_event: asyncio.Event | None = None) -> bool:
        """Revoke the token at the provider (RFC 7009) and forget it locally.

        Revocation failures are logged but never block the local removal.
        """
        token = self.access_token()
        if token is not None and self.descriptor.revoke_url:
            form = {"token": token.token, "token_type_hint": "access_token"}
            headers = {"Content-Type": FORM_CONTENT_TYPE}
            self._client_auth(form, headers)
            try:
                response = await self._send(
                    "POST", self.descriptor.revoke_url, headers, urlencode(form), cancel_event
                )
                if response.ok:
                    logger.debug(f"Token revoked for {self.key}")
                else:
                    logger.warning(f"Token revocation returned HTTP {response.status}")
            except (TransportError, FlowCancelledError) as e:
                logger.warning(f"Token revocation failed for {self.key}: {e}")

        return self.store.clear(self.key)


def create_flow(
    descriptor: ProviderDescriptor,
    credentials: Credentials,
    store: TokenStore,
    transport: HttpTransport,
    **kwargs: Any,
) -> OAuthFlow:
    """Build the flow variant matching the descriptor's OAuth version.

    Raises:
        ConfigurationError: If the descriptor declares an unsupported version
    """
    if descriptor.version is OAuthVersion.OAUTH1:
        return OAuth1Flow(descriptor, credentials, store, transport, **kwargs)
    if descriptor.version is OAuthVersion.OAUTH2:
        return OAuth2Flow(descriptor, credentials, store, transport, **kwargs)
    raise ConfigurationError(
        f"Provider {descriptor.name!r} has unsupported OAuth version {descriptor.version!r}"
    )
