from dataclasses import dataclass, field
from typing import Any, Mapping, Optional
from urllib.parse import urlsplit

from starlette.datastructures import Headers
from starlette.requests import HTTPConnection


@dataclass
class ProxyRequest:
    """
    Effective view of an inbound request or upgrade as seen by the proxy.

    ``url`` is the mutable path + query that gets forwarded and may be
    rewritten. ``original_url`` keeps the path the client actually asked for
    (mount prefixes included) and is never rewritten.
    """

    url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=Headers)
    original_url: Optional[str] = None
    connection: Optional[HTTPConnection] = None

    @classmethod
    def from_connection(cls, connection: HTTPConnection) -> "ProxyRequest":
        scope = connection.scope
        query = scope.get("query_string", b"").decode("latin-1")
        suffix = f"?{query}" if query else ""
        return cls(
            url=f"{scope.get('path', '/')}{suffix}",
            method=scope.get("method", "GET"),
            headers=connection.headers,
            original_url=f"{connection.url.path}{suffix}",
            connection=connection,
        )

    @property
    def path(self) -> str:
        return urlsplit(self.url).path

    @property
    def server(self) -> Any:
        """The ASGI application that received this request."""
        if self.connection is None:
            return None
        return self.connection.scope.get("app")

    @property
    def hostname(self) -> Optional[str]:
        if self.connection is None:
            return None
        return self.connection.url.hostname

    @property
    def host(self) -> Optional[str]:
        if self.connection is None:
            return None
        server = self.connection.scope.get("server")
        return server[0] if server else None

    @property
    def client_host(self) -> Optional[str]:
        if self.connection is None or self.connection.client is None:
            return None
        return self.connection.client.host

    @property
    def scheme(self) -> str:
        if self.connection is None:
            return "http"
        return self.connection.url.scheme

    async def body(self) -> bytes:
        if self.connection is None or self.method in ("GET", "HEAD"):
            return b""
        return await self.connection.body()
