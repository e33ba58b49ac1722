"""Request signing for OAuth1 (RFC 5849) and OAuth2 bearer tokens (RFC 6750).

OAuth1 signing follows RFC 5849 Section 3.4:
1. Collect query, form-body and oauth_* protocol parameters
2. Percent-encode names and values, sort, join into the normalized string
3. Build the base string: METHOD & enc(base URL) & enc(normalized params)
4. Sign with HMAC-SHA1, RSA-SHA1 or PLAINTEXT and emit an OAuth header
"""

import base64
import hashlib
import hmac
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Sequence, Union
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .credentials import Credentials
from .errors import SigningError
from .pkce import generate_nonce
from .registry import ProviderDescriptor
from .tokens import Token

logger = logging.getLogger(__name__)

Params = Union[Mapping[str, str], Sequence[tuple[str, str]]]

DEFAULT_PORTS = {"http": 80, "https": 443}


def percent_encode(value: str) -> str:
    """RFC 3986 percent-encoding: everything but unreserved characters."""
    return quote(str(value), safe="~")


def _pairs(params: Params | None) -> list[tuple[str, str]]:
    if not params:
        return []
    if isinstance(params, Mapping):
        return [(str(k), str(v)) for k, v in params.items()]
    return [(str(k), str(v)) for k, v in params]


def normalize_base_url(url: str) -> str:
    """Base string URI per RFC 5849 Section 3.4.1.2.

    Scheme and host are lower-cased, default ports dropped, query and
    fragment removed.
    """
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()

    netloc = host
    if parts.port is not None and DEFAULT_PORTS.get(scheme) != parts.port:
        netloc = f"{host}:{parts.port}"

    return urlunsplit((scheme, netloc, parts.path or "/", "", ""))


def normalize_parameters(params: Iterable[tuple[str, str]]) -> str:
    """Normalized request parameters per RFC 5849 Section 3.4.1.3.2."""
    encoded = sorted(
        (percent_encode(name), percent_encode(value))
        for name, value in params
        if name not in ("oauth_signature", "realm")
    )
    return "&".join(f"{name}={value}" for name, value in encoded)


def signature_base_string(method: str, url: str, params: Params | None = None) -> str:
    """Build the signature base string.

    Query parameters already present in the URL are collected automatically;
    params holds form-body and oauth_* protocol parameters.
    """
    query_params = parse_qsl(urlsplit(url).query, keep_blank_values=True)
    all_params = query_params + _pairs(params)
    return "&".join(
        [
            method.upper(),
            percent_encode(normalize_base_url(url)),
            percent_encode(normalize_parameters(all_params)),
        ]
    )


def _signing_key(client_secret: str, token_secret: str | None) -> str:
    return f"{percent_encode(client_secret)}&{percent_encode(token_secret or '')}"


def hmac_sha1_signature(
    base_string: str, client_secret: str, token_secret: str | None = None
) -> str:
    """HMAC-SHA1 signature, base64 encoded (RFC 5849 Section 3.4.2)."""
    key = _signing_key(client_secret, token_secret)
    digest = hmac.new(key.encode("utf-8"), base_string.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def rsa_sha1_signature(base_string: str, private_key: Union[str, bytes]) -> str:
    """RSA-SHA1 (PKCS#1 v1.5) signature, base64 encoded (RFC 5849 Section 3.4.3).

    Args:
        base_string: Signature base string
        private_key: PEM-encoded RSA private key

    Raises:
        SigningError: If the key cannot be loaded or is not an RSA key
    """
    pem = private_key.encode("ascii") if isinstance(private_key, str) else private_key
    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise SigningError(f"Could not load RSA private key: {e}") from e

    if not isinstance(key, rsa.RSAPrivateKey):
        raise SigningError("RSA-SHA1 signing requires an RSA private key")

    signature = key.sign(base_string.encode("utf-8"), padding.PKCS1v15(), hashes.SHA1())
    return base64.b64encode(signature).decode("ascii")


def plaintext_signature(client_secret: str, token_secret: str | None = None) -> str:
    """PLAINTEXT signature (RFC 5849 Section 3.4.4)."""
    return _signing_key(client_secret, token_secret)


@dataclass
class SignedRequest:
    """Outgoing request location and the headers that authorize it."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)


class RequestSigner(ABC):
    """Produces authorization for an outgoing request."""

    @abstractmethod
    def sign(
        self,
        method: str,
        url: str,
        params: Params | None = None,
        token: Token | None = None,
        oauth_params: Mapping[str, str] | None = None,
    ) -> SignedRequest:
        """Sign a request.

        Args:
            method: HTTP method
            url: Target URL (may carry a query string)
            params: Form-body parameters that are part of the request
            token: Request or access token, None for the request-token step
            oauth_params: Extra protocol parameters (oauth_callback, oauth_verifier)

        Raises:
            SigningError: If required secret material is missing
        """


class OAuth1Signer(RequestSigner):
    """Signs OAuth1 requests with HMAC-SHA1, RSA-SHA1 or PLAINTEXT.

    The clock and nonce factory are injectable so signatures can be
    reproduced exactly in tests.
    """

    def __init__(
        self,
        credentials: Credentials,
        signature_method: str = "HMAC-SHA1",
        rsa_private_key: Union[str, bytes, None] = None,
        realm: str | None = None,
        clock: Callable[[], float] | None = None,
        nonce_factory: Callable[[], str] | None = None,
        include_version: bool = True,
    ):
        self.credentials = credentials
        self.signature_method = signature_method
        self.rsa_private_key = rsa_private_key
        self.realm = realm
        self.clock = clock or time.time
        self.nonce_factory = nonce_factory or generate_nonce
        self.include_version = include_version

    def protocol_params(
        self, token: Token | None = None, oauth_params: Mapping[str, str] | None = None
    ) -> dict[str, str]:
        """The oauth_* parameters for a request, without the signature."""
        params = {
            "oauth_consumer_key": self.credentials.client_id,
            "oauth_signature_method": self.signature_method,
            "oauth_timestamp": str(int(self.clock())),
            "oauth_nonce": self.nonce_factory(),
        }
        if self.include_version:
            params["oauth_version"] = "1.0"
        if token is not None:
            params["oauth_token"] = token.token
        if oauth_params:
            params.update(oauth_params)
        return params

    def _signature(self, base_string: str, token_secret: str | None) -> str:
        if self.signature_method == "RSA-SHA1":
            if not self.rsa_private_key:
                raise SigningError("RSA-SHA1 signing requires an RSA private key")
            return rsa_sha1_signature(base_string, self.rsa_private_key)

        if not self.credentials.client_secret:
            raise SigningError(f"{self.signature_method} signing requires a client secret")

        if self.signature_method == "PLAINTEXT":
            return plaintext_signature(self.credentials.client_secret, token_secret)
        if self.signature_method == "HMAC-SHA1":
            return hmac_sha1_signature(base_string, self.credentials.client_secret, token_secret)

        raise SigningError(f"Unsupported signature method: {self.signature_method}")

    def authorization_header(self, params: Mapping[str, str]) -> str:
        """Format protocol parameters as an OAuth Authorization header."""
        parts = []
        if self.realm is not None:
            parts.append(f'realm="{self.realm}"')
        parts.extend(
            f'{percent_encode(name)}="{percent_encode(value)}"'
            for name, value in sorted(params.items())
        )
        return "OAuth " + ", ".join(parts)

    def sign(
        self,
        method: str,
        url: str,
        params: Params | None = None,
        token: Token | None = None,
        oauth_params: Mapping[str, str] | None = None,
    ) -> SignedRequest:
        token_secret = None
        if token is not None:
            token_secret = token.secret
            if not token_secret and self.signature_method != "RSA-SHA1":
                raise SigningError("Token secret is required to sign with a token")

        protocol = self.protocol_params(token, oauth_params)
        base_string = signature_base_string(
            method, url, _pairs(params) + list(protocol.items())
        )
        protocol["oauth_signature"] = self._signature(base_string, token_secret)

        logger.debug(f"Signed {method.upper()} {normalize_base_url(url)} with {self.signature_method}")
        return SignedRequest(url=url, headers={"Authorization": self.authorization_header(protocol)})


class BearerSigner(RequestSigner):
    """Attaches an OAuth2 access token as a bearer header or query parameter."""

    def __init__(self, placement: str = "header"):
        self.placement = placement

    def sign(
        self,
        method: str,
        url: str,
        params: Params | None = None,
        token: Token | None = None,
        oauth_params: Mapping[str, str] | None = None,
    ) -> SignedRequest:
        if token is None or not token.token:
            raise SigningError("An access token is required for bearer authorization")

        if self.placement == "query":
            parts = urlsplit(url)
            query = parse_qsl(parts.query, keep_blank_values=True)
            query.append(("access_token", token.token))
            return SignedRequest(url=urlunsplit(parts._replace(query=urlencode(query))))

        # Always "Bearer" per RFC 6750, whatever token_type the provider reported
        return SignedRequest(url=url, headers={"Authorization": f"Bearer {token.token}"})


def create_signer(
    descriptor: ProviderDescriptor,
    credentials: Credentials,
    rsa_private_key: Union[str, bytes, None] = None,
) -> RequestSigner:
    """Pick the signer matching the provider's protocol version."""
    if descriptor.is_oauth1:
        return OAuth1Signer(
            credentials,
            signature_method=descriptor.signature_method,
            rsa_private_key=rsa_private_key,
        )
    return BearerSigner(descriptor.token_placement)
