"""Typed request/response pair passed between routes, gateway and rewriter."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

import httpx


@dataclass
class ProxyRequest:
    """HTTP request as seen by the gateway, independent of the web framework.

    ``query`` keeps every parameter in request order, repeated keys included.
    A mapping is accepted and converted.
    """

    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None
    query: list[tuple[str, str]] = field(default_factory=list)
    client_host: str | None = None
    scheme: str = "http"

    def __post_init__(self) -> None:
        if isinstance(self.query, Mapping):
            self.query = list(self.query.items())

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    @property
    def token(self) -> str | None:
        for key, value in self.query:
            if key == "token" and value:
                return value
        return None

    @property
    def wants_document(self) -> bool:
        """True when the browser is navigating rather than fetching a subresource."""
        dest = self.header("sec-fetch-dest")
        if dest:
            return dest in ("document", "iframe")
        return "text/html" in self.header("accept")


@dataclass
class ProxyResponse:
    """Response produced by one of the gateway's resolution strategies.

    Headers are multi-valued so repeated ``Set-Cookie`` lines survive.
    """

    status_code: int
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    body: bytes = b""
    source: str = "upstream"

    def __post_init__(self) -> None:
        if not isinstance(self.headers, httpx.Headers):
            self.headers = httpx.Headers(self.headers)

    @property
    def media_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def is_html(self) -> bool:
        content_type = self.media_type.lower()
        return "text/html" in content_type or "application/xhtml" in content_type
