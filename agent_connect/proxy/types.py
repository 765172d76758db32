"""Proxy credential model and the provider contract."""

from __future__ import annotations

import base64
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Awaitable, Protocol, Union
from urllib.parse import urlsplit

_DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class ProxyCredential:
    """A single upstream proxy: ``server`` plus optional credentials.

    ``server`` is ``host:port`` with an optional ``http://`` or ``https://``
    scheme; a missing scheme means plain HTTP.
    """

    server: str
    username: str | None = None
    password: str | None = None

    @classmethod
    def coerce(cls, value: Any) -> "ProxyCredential | None":
        """Accept a credential or a mapping with a ``server`` key.

        Returns ``None`` when *value* carries no usable server.
        """
        if isinstance(value, cls):
            return value if value.server else None
        if isinstance(value, Mapping):
            server = value.get("server")
            if not server:
                return None
            return cls(
                server=str(server),
                username=value.get("username"),
                password=value.get("password"),
            )
        return None

    @property
    def url(self) -> str:
        """Server with an explicit scheme."""
        if self.server.startswith(("http://", "https://")):
            return self.server
        return f"http://{self.server}"

    def endpoint(self) -> tuple[str, str, int]:
        """Return ``(scheme, host, port)``.

        Raises ``ValueError`` if the server cannot be parsed.
        """
        parts = urlsplit(self.url)
        scheme = parts.scheme.lower()
        host = parts.hostname
        if not host:
            raise ValueError(f"Proxy server has no host: {self.server!r}")
        port = parts.port or _DEFAULT_PORTS.get(scheme, 80)
        return scheme, host, port

    def proxy_authorization(self) -> str | None:
        """Basic auth header value, only when both username and password are set."""
        if not (self.username and self.password):
            return None
        token = f"{self.username}:{self.password}".encode("utf-8")
        return "Basic " + base64.b64encode(token).decode("ascii")

    def redacted(self) -> str:
        """Loggable form: never includes the password."""
        if self.username:
            return f"{self.username}@{self.server}"
        return self.server


ProviderResult = Union[ProxyCredential, Mapping[str, Any], None]


class ProxyProvider(Protocol):
    """Anything that hands out upstream proxies on demand.

    ``get`` may be a coroutine function or a plain function.
    """

    def get(self) -> "Awaitable[ProviderResult] | ProviderResult": ...
