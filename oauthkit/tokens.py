"""OAuth token data structures and utilities.

Two token kinds exist: the short-lived OAuth1 RequestToken that only lives
between the redirect and the callback, and the durable AccessToken used for
API calls. Both serialize to plain dictionaries for persistent stores.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Union


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class RequestToken:
    """OAuth1 temporary credentials obtained from the request-token endpoint."""

    token: str
    secret: str
    callback_confirmed: bool = False
    issued_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for storage."""
        return {
            "kind": "request",
            "token": self.token,
            "secret": self.secret,
            "callback_confirmed": self.callback_confirmed,
            "issued_at": self.issued_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RequestToken":
        """Deserialize from storage."""
        return cls(
            token=data["token"],
            secret=data["secret"],
            callback_confirmed=bool(data.get("callback_confirmed", False)),
            issued_at=_parse_datetime(data.get("issued_at")) or _utcnow(),
        )


@dataclass
class AccessToken:
    """Durable credential for making API calls on the user's behalf.

    Attributes:
        token: The access token string
        secret: OAuth1 token secret (None for OAuth2)
        expires_at: When the token expires (UTC), if the provider said so
        refresh_token: OAuth2 refresh token, if issued
        token_type: Token type reported by the provider (typically "Bearer")
        scope: Granted scope string, if reported
        issued_at: When the token was obtained (UTC)
        extra: Any non-standard fields from the token response
    """

    token: str
    secret: str | None = None
    expires_at: datetime | None = None
    refresh_token: str | None = None
    token_type: str = "Bearer"
    scope: str | None = None
    issued_at: datetime = field(default_factory=_utcnow)
    extra: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, buffer_seconds: int = 30) -> bool:
        """Check if the token is expired or will expire within buffer_seconds.

        Tokens without expiry information are assumed valid; the provider will
        answer 401 if they are not.
        """
        if self.expires_at is None:
            return False

        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        return _utcnow() >= (expires_at - timedelta(seconds=buffer_seconds))

    def has_refresh_token(self) -> bool:
        """Check if this token has a refresh token."""
        return bool(self.refresh_token)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for storage."""
        data: dict[str, Any] = {
            "kind": "access",
            "token": self.token,
            "token_type": self.token_type,
            "issued_at": self.issued_at.isoformat(),
        }
        if self.secret:
            data["secret"] = self.secret
        if self.expires_at:
            data["expires_at"] = self.expires_at.isoformat()
        if self.refresh_token:
            data["refresh_token"] = self.refresh_token
        if self.scope:
            data["scope"] = self.scope
        if self.extra:
            data["extra"] = self.extra
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccessToken":
        """Deserialize from storage."""
        return cls(
            token=data["token"],
            secret=data.get("secret"),
            expires_at=_parse_datetime(data.get("expires_at")),
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope"),
            issued_at=_parse_datetime(data.get("issued_at")) or _utcnow(),
            extra=dict(data.get("extra", {})),
        )

    @classmethod
    def from_token_response(cls, response: dict[str, Any]) -> "AccessToken":
        """Create an AccessToken from an OAuth2 token endpoint response.

        Args:
            response: Parsed token endpoint response (must hold access_token)

        Returns:
            AccessToken with expires_at computed from expires_in
        """
        now = _utcnow()

        expires_at = None
        expires_in = response.get("expires_in")
        if expires_in not in (None, ""):
            expires_at = now + timedelta(seconds=int(expires_in))

        known = {"access_token", "token_type", "expires_in", "refresh_token", "scope"}
        extra = {k: v for k, v in response.items() if k not in known}

        return cls(
            token=response["access_token"],
            expires_at=expires_at,
            refresh_token=response.get("refresh_token") or None,
            token_type=response.get("token_type") or "Bearer",
            scope=response.get("scope") or None,
            issued_at=now,
            extra=extra,
        )


Token = Union[RequestToken, AccessToken]


def token_to_dict(token: Token) -> dict[str, Any]:
    """Serialize either token kind."""
    return token.to_dict()


def token_from_dict(data: dict[str, Any]) -> Token:
    """Deserialize a token produced by token_to_dict.

    Raises:
        ValueError: If the stored kind is not recognized
    """
    kind = data.get("kind", "access")
    if kind == "request":
        return RequestToken.from_dict(data)
    if kind == "access":
        return AccessToken.from_dict(data)
    raise ValueError(f"Unknown token kind: {kind!r}")
