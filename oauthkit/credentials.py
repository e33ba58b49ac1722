"""OAuth client credentials."""

from dataclasses import dataclass

from .errors import ConfigurationError


@dataclass(frozen=True)
class Credentials:
    """Client identity registered with a provider.

    Immutable; a new instance is built for every authorization attempt from
    the provider settings and the resolved callback URL.
    """

    client_id: str
    client_secret: str
    callback_url: str

    def __post_init__(self) -> None:
        if not self.client_id:
            raise ConfigurationError("OAuth client_id is missing")
        if not self.client_secret:
            raise ConfigurationError("OAuth client_secret is missing")

    def __repr__(self) -> str:
        return (
            f"Credentials(client_id={self.client_id!r}, client_secret='***', "
            f"callback_url={self.callback_url!r})"
        )
