"""Upstream-switchable local forwarding proxy.

Architecture
------------
A ``ForwardingProxy`` binds one local TCP port that the browser uses as its
HTTP/HTTPS proxy for the whole session. Every accepted connection reads a
single request head and is relayed as raw bytes:

* ``CONNECT host:port`` opens a tunnel, either straight to the destination
  or through the configured upstream proxy (which receives its own
  ``CONNECT`` with ``Proxy-Authorization``).
* Absolute-form plain HTTP requests are sent to the origin in origin-form,
  or forwarded unchanged to the upstream proxy.

The upstream is read once when a connection is accepted, so
``set_upstream()`` affects every connection accepted after it returns while
in-flight tunnels finish on the previous upstream. There is no TLS
termination: the browser negotiates TLS end to end with the origin.

Usage::

    proxy = await ForwardingProxy.start()
    browser = await playwright.chromium.launch(proxy={"server": proxy.url})
    ...
    proxy.set_upstream(ProxyCredential("gw.example.net:8000", "user", "pw"))
    ...
    await proxy.close()
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from asyncio import StreamReader, StreamWriter
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlsplit

from agent_connect.errors import ProxyBindError
from agent_connect.proxy.types import ProxyCredential

logger = logging.getLogger(__name__)

READ_BUFFER_SIZE = 64 * 1024
HEAD_TIMEOUT_SECONDS = 30.0
CONNECT_TIMEOUT_SECONDS = 15.0
MAX_HEAD_LINES = 200

# Headers addressed to this proxy, never forwarded to an origin.
_HOP_HEADERS = frozenset({"proxy-authorization", "proxy-connection", "connection", "keep-alive"})


class ProxyState(str, Enum):
    """Lifecycle of a ForwardingProxy."""

    STARTING = "starting"
    LISTENING = "listening"
    CLOSED = "closed"


@dataclass
class _RequestHead:
    method: str
    target: str
    version: str
    headers: list[tuple[str, str]]


class _Connection:
    """``(StreamReader, StreamWriter)`` pair with an idempotent close."""

    __slots__ = ("reader", "writer", "_closed")

    def __init__(self, reader: StreamReader, writer: StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()

    async def close(self, force: bool = False) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if force:
                self.writer.transport.abort()
                return
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=2.0)
        except asyncio.TimeoutError:
            self.writer.transport.abort()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Connection close error: %s", exc)


class ForwardingProxy:
    """Local proxy whose upstream can be swapped at runtime.

    Use :meth:`start` to create a listening instance.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0) -> None:
        self.host = host
        self.port = port
        self.state = ProxyState.STARTING
        self._upstream: ProxyCredential | None = None
        self._server: asyncio.AbstractServer | None = None
        self._connections: set[_Connection] = set()
        self._handlers: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    async def start(cls, port: int | None = None, host: str = "127.0.0.1") -> "ForwardingProxy":
        """Bind and start listening. Raises :class:`ProxyBindError` on failure."""
        proxy = cls(host=host, port=port or 0)
        await proxy._listen()
        return proxy

    async def _listen(self) -> None:
        try:
            self._server = await asyncio.start_server(self._handle_client, self.host, self.port)
        except OSError as exc:
            self.state = ProxyState.CLOSED
            raise ProxyBindError(
                f"Failed to bind forwarding proxy on {self.host}:{self.port}: {exc}",
                host=self.host,
                port=self.port,
            ) from exc

        self.port = self._server.sockets[0].getsockname()[1]
        self.state = ProxyState.LISTENING
        logger.info("Forwarding proxy listening on %s", self.url)

    async def close(self) -> None:
        """Stop accepting connections and tear down active relays. Idempotent."""
        if self.state == ProxyState.CLOSED:
            return
        self.state = ProxyState.CLOSED

        if self._server is not None:
            self._server.close()
            self._server = None

        for conn in list(self._connections):
            await conn.close(force=True)
        self._connections.clear()

        handlers = [task for task in self._handlers if not task.done()]
        for task in handlers:
            task.cancel()
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)
        self._handlers.clear()
        self._upstream = None
        logger.info("Forwarding proxy closed (was port %d)", self.port)

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def is_closed(self) -> bool:
        return self.state == ProxyState.CLOSED

    # ------------------------------------------------------------------
    # Upstream slot
    # ------------------------------------------------------------------

    def set_upstream(self, credential: ProxyCredential | None) -> None:
        """Replace the upstream; ``None`` means direct connections."""
        self._upstream = credential
        logger.debug(
            "Forwarding proxy upstream set to %s",
            credential.redacted() if credential else "direct",
        )

    def current_upstream(self) -> ProxyCredential | None:
        return self._upstream

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_client(self, reader: StreamReader, writer: StreamWriter) -> None:
        """Entry point for each accepted connection (called by ``asyncio.Server``)."""
        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)
        upstream = self._upstream
        client = self._track(_Connection(reader, writer))
        target: _Connection | None = None

        try:
            head = await asyncio.wait_for(self._read_head(reader), timeout=HEAD_TIMEOUT_SECONDS)
            if head is None:
                return

            if head.method.upper() == "CONNECT":
                target = await self._open_tunnel(client, head, upstream)
            else:
                target = await self._open_plain(client, head, upstream)

            if target is not None:
                await self._pipe_both(client, target)

        except asyncio.TimeoutError:
            self._try_error(client, b"HTTP/1.1 504 Gateway Timeout\r\n\r\n")
        except OSError as exc:
            logger.debug("Forwarding failed: %s", exc)
            self._try_error(client, b"HTTP/1.1 502 Bad Gateway\r\n\r\n")
        except Exception:
            logger.warning("Unexpected forwarding error", exc_info=True)
            self._try_error(client, b"HTTP/1.1 500 Internal Server Error\r\n\r\n")
        finally:
            for conn in (target, client):
                if conn is not None:
                    self._untrack(conn)
                    await conn.close()
            if task is not None:
                self._handlers.discard(task)

    async def _read_head(self, reader: StreamReader) -> _RequestHead | None:
        line = await reader.readline()
        if not line:
            return None
        parts = line.decode("latin-1").strip().split(" ", 2)
        if len(parts) < 3:
            return None
        method, target, version = parts

        headers: list[tuple[str, str]] = []
        for _ in range(MAX_HEAD_LINES):
            raw = await reader.readline()
            if not raw or raw in (b"\r\n", b"\n"):
                break
            decoded = raw.decode("latin-1").rstrip("\r\n")
            if ":" in decoded:
                name, value = decoded.split(":", 1)
                headers.append((name.strip(), value.strip()))
        return _RequestHead(method=method, target=target, version=version, headers=headers)

    # -- CONNECT -----------------------------------------------------------

    async def _open_tunnel(
        self,
        client: _Connection,
        head: _RequestHead,
        upstream: ProxyCredential | None,
    ) -> _Connection | None:
        """Establish a CONNECT tunnel and confirm it to the browser."""
        authority = head.target
        if upstream is None:
            host, port = _split_authority(authority, default_port=443)
            target = self._track(await self._open(host, port))
            client.writer.write(b"HTTP/1.1 200 Connection Established\r\n\r\n")
            await client.writer.drain()
            return target

        target = await self._open_upstream(client, upstream)
        if target is None:
            return None

        lines = [f"CONNECT {authority} HTTP/1.1", f"Host: {authority}"]
        auth = upstream.proxy_authorization()
        if auth:
            lines.append(f"Proxy-Authorization: {auth}")
        target.writer.write(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1"))
        await target.writer.drain()

        status_line, response_head = await asyncio.wait_for(
            _read_response_head(target.reader), timeout=CONNECT_TIMEOUT_SECONDS
        )
        if not status_line:
            raise ConnectionError(f"Upstream {upstream.redacted()} closed during CONNECT")
        if _status_code(status_line) != 200:
            logger.warning(
                "Upstream %s refused tunnel to %s: %s",
                upstream.redacted(),
                authority,
                status_line.strip(),
            )
            client.writer.write(response_head)
            await client.writer.drain()
            self._untrack(target)
            await target.close()
            return None

        client.writer.write(b"HTTP/1.1 200 Connection Established\r\n\r\n")
        await client.writer.drain()
        return target

    # -- plain HTTP --------------------------------------------------------

    async def _open_plain(
        self,
        client: _Connection,
        head: _RequestHead,
        upstream: ProxyCredential | None,
    ) -> _Connection | None:
        """Forward an absolute-form HTTP request; the body follows via the pipe."""
        if upstream is not None:
            target = await self._open_upstream(client, upstream)
            if target is None:
                return None
            headers = [(k, v) for k, v in head.headers if k.lower() not in _HOP_HEADERS]
            auth = upstream.proxy_authorization()
            if auth:
                headers.append(("Proxy-Authorization", auth))
            # One request per client connection, so the next request reads the current upstream.
            headers.append(("Connection", "close"))
            request_target = head.target
        else:
            parsed = urlsplit(head.target)
            if parsed.scheme.lower() != "http" or not parsed.hostname:
                client.writer.write(b"HTTP/1.1 400 Bad Request\r\n\r\n")
                await client.writer.drain()
                return None
            target = self._track(await self._open(parsed.hostname, parsed.port or 80))
            headers = [(k, v) for k, v in head.headers if k.lower() not in _HOP_HEADERS]
            headers.append(("Connection", "close"))
            request_target = parsed.path or "/"
            if parsed.query:
                request_target = f"{request_target}?{parsed.query}"

        lines = [f"{head.method} {request_target} {head.version}"]
        lines.extend(f"{name}: {value}" for name, value in headers)
        target.writer.write(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1"))
        await target.writer.drain()
        return target

    # -- helpers -----------------------------------------------------------

    async def _open_upstream(
        self, client: _Connection, upstream: ProxyCredential
    ) -> _Connection | None:
        # No usable host or port (e.g. "gw.example.net:abc"): nothing to forward to.
        try:
            scheme, host, port = upstream.endpoint()
        except ValueError as exc:
            logger.warning("Unusable upstream %s: %s", upstream.redacted(), exc)
            client.writer.write(b"HTTP/1.1 502 Bad Gateway\r\n\r\n")
            await client.writer.drain()
            return None
        tls = ssl.create_default_context() if scheme == "https" else None
        return self._track(await self._open(host, port, tls=tls))

    @staticmethod
    async def _open(host: str, port: int, tls: ssl.SSLContext | None = None) -> _Connection:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=tls),
            timeout=CONNECT_TIMEOUT_SECONDS,
        )
        return _Connection(reader, writer)

    @staticmethod
    async def _pipe_both(client: _Connection, target: _Connection) -> None:
        """Full-duplex byte relay until either side closes."""

        async def pipe(src: _Connection, dst: _Connection) -> None:
            try:
                while not dst.closed:
                    data = await src.reader.read(READ_BUFFER_SIZE)
                    if not data:
                        break
                    dst.writer.write(data)
                    await dst.writer.drain()
            except OSError:
                pass

        up = asyncio.ensure_future(pipe(client, target))
        down = asyncio.ensure_future(pipe(target, client))
        try:
            _done, pending = await asyncio.wait([up, down], return_when=asyncio.FIRST_COMPLETED)
            # Let the response side finish draining once the request side is done.
            if down in pending:
                try:
                    await asyncio.wait_for(asyncio.shield(down), timeout=HEAD_TIMEOUT_SECONDS)
                except asyncio.TimeoutError:
                    pass
            for task in (up, down):
                if not task.done():
                    task.cancel()
            await asyncio.gather(up, down, return_exceptions=True)
        except asyncio.CancelledError:
            up.cancel()
            down.cancel()
            raise

    @staticmethod
    def _try_error(client: _Connection, msg: bytes) -> None:
        """Best-effort error response."""
        try:
            if not client.closed:
                client.writer.write(msg)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Could not send error response: %s", exc)

    def _track(self, conn: _Connection) -> _Connection:
        self._connections.add(conn)
        return conn

    def _untrack(self, conn: _Connection) -> None:
        self._connections.discard(conn)


def _split_authority(authority: str, default_port: int) -> tuple[str, int]:
    host, sep, port = authority.rpartition(":")
    if not sep or not port.isdigit():
        return authority.strip("[]"), default_port
    return host.strip("[]"), int(port)


async def _read_response_head(reader: StreamReader) -> tuple[str, bytes]:
    """Read a response status line plus headers; returns (status line, raw head)."""
    status = await reader.readline()
    raw = bytearray(status)
    for _ in range(MAX_HEAD_LINES):
        line = await reader.readline()
        raw.extend(line)
        if not line or line in (b"\r\n", b"\n"):
            break
    return status.decode("latin-1"), bytes(raw)


def _status_code(status_line: str) -> int:
    parts = status_line.split(" ", 2)
    if len(parts) < 2 or not parts[1].isdigit():
        return 0
    return int(parts[1])


async def start_forwarding_proxy(port: int | None = None) -> ForwardingProxy:
    """Start a ForwardingProxy on 127.0.0.1 (random free port by default)."""
    return await ForwardingProxy.start(port)
