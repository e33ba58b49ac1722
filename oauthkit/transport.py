"""HTTP transport used by the flows.

The engine never opens sockets itself: it calls an injected HttpTransport.
HttpxTransport is the default implementation on top of httpx.AsyncClient.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import parse_qsl

import httpx

from .errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


@dataclass
class HttpResponse:
    """Status, headers and body of a provider response."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        for name, value in self.headers.items():
            if name.lower() == "content-type":
                return value.lower()
        return ""

    def json(self) -> Any:
        return json.loads(self.body)

    def form(self) -> dict[str, str]:
        """Parse a form-encoded body, keeping empty values."""
        return dict(parse_qsl(self.body, keep_blank_values=True))

    def parse(self) -> dict[str, Any]:
        """Parse a token endpoint body as JSON or form data.

        JSON is used when the content type says so or the body looks like an
        object; everything else is treated as application/x-www-form-urlencoded.

        Raises:
            ValueError: If the body is not a JSON object or has no form fields
        """
        text = self.body.strip()
        if "json" in self.content_type or text.startswith("{"):
            data = json.loads(text)
            if not isinstance(data, dict):
                raise ValueError("Expected a JSON object")
            return data

        data = self.form()
        if not data:
            raise ValueError("Empty or non form-encoded body")
        return data


class HttpTransport(Protocol):
    """Capability to send one HTTP request."""

    async def send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: str | None,
        timeout: float | None,
    ) -> HttpResponse:
        ...


class HttpxTransport:
    """HttpTransport backed by httpx.AsyncClient.

    Usage:
        async with HttpxTransport() as transport:
            response = await transport.send("POST", url, headers, body, 10.0)
    """

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = DEFAULT_TIMEOUT):
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: str | None,
        timeout: float | None,
    ) -> HttpResponse:
        """Send a request and return the full response.

        Raises:
            TransportError: On connection errors and timeouts
        """
        client = self._get_client()
        try:
            response = await client.request(
                method,
                url,
                headers=headers,
                content=body.encode("utf-8") if body is not None else None,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.RequestError as e:
            raise TransportError(f"Network error during {method} {url}: {e}") from e

        logger.debug(f"{method} {url} -> HTTP {response.status_code}")
        return HttpResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=response.text,
        )

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
