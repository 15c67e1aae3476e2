"""Pydantic models used by the Load Balancer service."""
from __future__ import annotations

from urllib.parse import quote_from_bytes

import httpx
from pydantic import BaseModel, ConfigDict, HttpUrl

# Printable and control ASCII pass through; only bytes >= 0x80 are escaped
_ASCII = bytes(range(0x80))


class Backend(BaseModel):
    """Represents a backend server reachable via an absolute http(s) URL."""

    model_config = ConfigDict(frozen=True)

    url: HttpUrl

    @property
    def scheme(self) -> str:
        return self.url.scheme

    @property
    def host(self) -> str:
        return self.url.host or ""

    @property
    def port(self) -> int:
        # HttpUrl fills in 80/443 when the address omits the port
        return self.url.port or (443 if self.scheme == "https" else 80)

    @property
    def base_path(self) -> str:
        return (self.url.path or "").rstrip("/")

    @property
    def netloc(self) -> str:
        """``host:port`` of the backend, as used in log lines and metric labels."""
        return f"{self.host}:{self.port}"

    def target(self, path: bytes, query: bytes = b"") -> httpx.URL:
        """Rewrite a raw incoming path and query string onto this backend.

        Both arrive as the bytes the client sent. Bytes outside ASCII are
        percent-escaped as-is, so a UTF-8 path keeps its exact byte sequence
        instead of being re-encoded.
        """
        if not path.startswith(b"/"):
            path = b"/" + path
        raw = quote_from_bytes(path, safe=_ASCII)
        if query:
            raw = f"{raw}?{quote_from_bytes(query, safe=_ASCII)}"
        raw_path = f"{self.base_path}{raw}".encode("ascii")
        return httpx.URL(scheme=self.scheme, host=self.host, port=self.port, raw_path=raw_path)
