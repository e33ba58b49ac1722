"""Exception hierarchy for oauthkit.

Every error raised by the library derives from OAuthError so callers can
catch the whole family at once. None of these are retried internally.
"""

from typing import Any


class OAuthError(Exception):
    """Base class for all oauthkit errors."""

    pass


class ConfigurationError(OAuthError):
    """Missing or invalid configuration (client id/secret, callback, endpoints)."""

    pass


class UnknownProviderError(OAuthError, KeyError):
    """No provider is registered under the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown OAuth provider: {name!r}")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0])


class DuplicateProviderError(OAuthError):
    """A provider with this name is already registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"OAuth provider {name!r} is already registered (pass override=True to replace it)"
        )


class SigningError(OAuthError):
    """Required secret material for signing a request is missing."""

    pass


class TokenStoreError(OAuthError):
    """Error in token storage operations."""

    pass


class TokenNotFoundError(TokenStoreError, KeyError):
    """No token is stored under the requested key."""

    def __init__(self, key: str, message: str | None = None):
        self.key = key
        super().__init__(message or f"No token stored for {key!r}")

    def __str__(self) -> str:
        return str(self.args[0])


class TokenDecryptionError(TokenStoreError):
    """Failed to decrypt the token storage file.

    The encryption key has changed (keyring cleared, different machine) and
    existing tokens cannot be read. Callers should either re-authenticate or
    clear the store.
    """

    pass


class ProviderResponseError(OAuthError):
    """The provider answered with a non-2xx status or an unparseable body.

    The raw status and body are kept on the exception for the caller; the
    message itself only carries the status and the provider's standard
    error fields so that tokens never end up in logs.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        body: str = "",
        error: str | None = None,
        error_description: str | None = None,
    ):
        self.status = status
        self.body = body
        self.error = error
        self.error_description = error_description

        detail = ""
        if error or error_description:
            detail = f": {error or ''} - {error_description or ''}"
        status_text = f" (HTTP {status})" if status is not None else ""
        super().__init__(f"{message}{status_text}{detail}")

    @classmethod
    def from_response(
        cls, message: str, status: int, body: str, fields: dict[str, Any] | None = None
    ) -> "ProviderResponseError":
        """Build the error, extracting only the safe error fields."""
        fields = fields or {}
        return cls(
            message,
            status=status,
            body=body,
            error=fields.get("error") or None,
            error_description=fields.get("error_description") or None,
        )


class RequestTokenError(ProviderResponseError):
    """The OAuth1 request-token step failed or the callback was not confirmed."""

    pass


class StateMismatchError(OAuthError):
    """Callback does not match the authorization that was started.

    Always a security failure (possible CSRF or session fixation), never
    something to retry.
    """

    pass


class CallbackError(OAuthError):
    """Callback parameters are missing or report that authorization was denied."""

    pass


class TransportError(OAuthError):
    """Network-level failure talking to the provider. Safe to retry."""

    pass


class FlowCancelledError(OAuthError):
    """The outbound call was cancelled through the caller's cancel event."""

    pass
