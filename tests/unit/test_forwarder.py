"""Unit tests for the forwarding proxy, over real loopback sockets."""

from __future__ import annotations

import asyncio
import base64
import contextlib
from typing import AsyncIterator, Awaitable, Callable

import pytest

from agent_connect.errors import ErrorCode, ProxyBindError
from agent_connect.proxy.forwarder import ForwardingProxy, ProxyState, start_forwarding_proxy
from agent_connect.proxy.types import ProxyCredential

Handler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


@contextlib.asynccontextmanager
async def _serve(handler: Handler) -> AsyncIterator[int]:
    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    try:
        yield server.sockets[0].getsockname()[1]
    finally:
        server.close()


class _Recorder:
    """Loopback server that records request heads and answers with *reply*."""

    def __init__(self, reply: bytes, echo_after: bool = False) -> None:
        self.reply = reply
        self.echo_after = echo_after
        self.heads: list[str] = []

    async def __call__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            head = await reader.readuntil(b"\r\n\r\n")
            self.heads.append(head.decode("latin-1"))
            writer.write(self.reply)
            await writer.drain()
            if self.echo_after:
                data = await reader.read(1024)
                writer.write(data)
                await writer.drain()
        finally:
            writer.close()

    def header(self, index: int, name: str) -> str | None:
        for line in self.heads[index].split("\r\n")[1:]:
            key, _, value = line.partition(":")
            if key.strip().lower() == name.lower():
                return value.strip()
        return None


def _origin() -> _Recorder:
    return _Recorder(b"HTTP/1.1 200 OK\r\nContent-Length: 6\r\nConnection: close\r\n\r\norigin")


def _upstream() -> _Recorder:
    return _Recorder(b"HTTP/1.1 200 OK\r\nContent-Length: 8\r\nConnection: close\r\n\r\nupstream")


async def _request(proxy: ForwardingProxy, raw: bytes) -> bytes:
    reader, writer = await asyncio.open_connection("127.0.0.1", proxy.port)
    try:
        writer.write(raw)
        await writer.drain()
        return await asyncio.wait_for(reader.read(), timeout=5)
    finally:
        writer.close()


def _get(url: str) -> bytes:
    return (
        f"GET {url} HTTP/1.1\r\nHost: example.test\r\n"
        "Proxy-Connection: keep-alive\r\nProxy-Authorization: Basic Zm9vOmJhcg==\r\n\r\n"
    ).encode("latin-1")


def _basic(user: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{user}:{password}".encode()).decode()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_binds_loopback_port(self) -> None:
        proxy = await start_forwarding_proxy()
        try:
            assert proxy.state == ProxyState.LISTENING
            assert proxy.port > 0
            assert proxy.url == f"http://127.0.0.1:{proxy.port}"
            assert proxy.current_upstream() is None
        finally:
            await proxy.close()

    @pytest.mark.asyncio
    async def test_bind_conflict_raises(self) -> None:
        first = await ForwardingProxy.start()
        try:
            with pytest.raises(ProxyBindError) as exc_info:
                await ForwardingProxy.start(first.port)
            assert exc_info.value.code == ErrorCode.BIND_FAILED
            assert exc_info.value.details["port"] == first.port
        finally:
            await first.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        proxy = await ForwardingProxy.start()
        port = proxy.port

        await proxy.close()
        await proxy.close()

        assert proxy.is_closed
        with pytest.raises(OSError):
            await asyncio.open_connection("127.0.0.1", port)

    @pytest.mark.asyncio
    async def test_close_clears_upstream(self) -> None:
        proxy = await ForwardingProxy.start()
        proxy.set_upstream(ProxyCredential("127.0.0.1:1", "u", "p"))

        await proxy.close()

        assert proxy.current_upstream() is None


class TestDirectForwarding:
    @pytest.mark.asyncio
    async def test_plain_http_rewritten_to_origin_form(self) -> None:
        origin = _origin()
        proxy = await ForwardingProxy.start()
        try:
            async with _serve(origin) as port:
                response = await _request(proxy, _get(f"http://127.0.0.1:{port}/path?q=1"))
        finally:
            await proxy.close()

        assert response.endswith(b"origin")
        assert origin.heads[0].startswith("GET /path?q=1 HTTP/1.1\r\n")
        assert origin.header(0, "Proxy-Connection") is None
        assert origin.header(0, "Proxy-Authorization") is None
        assert origin.header(0, "Connection") == "close"

    @pytest.mark.asyncio
    async def test_connect_tunnel_relays_bytes(self) -> None:
        echo = _Recorder(b"", echo_after=True)
        proxy = await ForwardingProxy.start()
        try:
            async with _serve(echo) as port:
                reader, writer = await asyncio.open_connection("127.0.0.1", proxy.port)
                writer.write(f"CONNECT 127.0.0.1:{port} HTTP/1.1\r\n\r\n".encode())
                status = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout=5)
                # The echo server expects a head before echoing.
                writer.write(b"HELLO\r\n\r\nping")
                echoed = await asyncio.wait_for(reader.read(), timeout=5)
                writer.close()
        finally:
            await proxy.close()

        assert status.startswith(b"HTTP/1.1 200")
        assert echoed == b"ping"

    @pytest.mark.asyncio
    async def test_https_absolute_form_rejected(self) -> None:
        proxy = await ForwardingProxy.start()
        try:
            response = await _request(proxy, _get("https://example.test/"))
        finally:
            await proxy.close()

        assert response.startswith(b"HTTP/1.1 400")

    @pytest.mark.asyncio
    async def test_unreachable_origin_gives_502(self) -> None:
        async with _serve(_origin()) as port:
            pass  # port is free again once the server is closed
        proxy = await ForwardingProxy.start()
        try:
            response = await _request(proxy, _get(f"http://127.0.0.1:{port}/"))
        finally:
            await proxy.close()

        assert response.startswith(b"HTTP/1.1 502")


class TestUpstreamForwarding:
    @pytest.mark.asyncio
    async def test_plain_http_forwarded_with_authorization(self) -> None:
        upstream = _upstream()
        proxy = await ForwardingProxy.start()
        try:
            async with _serve(upstream) as port:
                proxy.set_upstream(ProxyCredential(f"127.0.0.1:{port}", "alice", "pw"))
                response = await _request(proxy, _get("http://example.test/a"))
        finally:
            await proxy.close()

        assert response.endswith(b"upstream")
        assert upstream.heads[0].startswith("GET http://example.test/a HTTP/1.1\r\n")
        assert upstream.header(0, "Proxy-Authorization") == _basic("alice", "pw")

    @pytest.mark.asyncio
    async def test_no_authorization_without_password(self) -> None:
        upstream = _upstream()
        proxy = await ForwardingProxy.start()
        try:
            async with _serve(upstream) as port:
                proxy.set_upstream(ProxyCredential(f"http://127.0.0.1:{port}", "alice"))
                await _request(proxy, _get("http://example.test/"))
        finally:
            await proxy.close()

        assert upstream.header(0, "Proxy-Authorization") is None

    @pytest.mark.asyncio
    async def test_connect_through_upstream(self) -> None:
        upstream = _Recorder(b"HTTP/1.1 200 Connection established\r\n\r\n", echo_after=True)
        proxy = await ForwardingProxy.start()
        try:
            async with _serve(upstream) as port:
                proxy.set_upstream(ProxyCredential(f"127.0.0.1:{port}", "bob", "secret"))
                reader, writer = await asyncio.open_connection("127.0.0.1", proxy.port)
                writer.write(b"CONNECT example.test:443 HTTP/1.1\r\nHost: example.test:443\r\n\r\n")
                status = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout=5)
                writer.write(b"tls-bytes")
                echoed = await asyncio.wait_for(reader.read(), timeout=5)
                writer.close()
        finally:
            await proxy.close()

        assert status.startswith(b"HTTP/1.1 200")
        assert echoed == b"tls-bytes"
        assert upstream.heads[0].startswith("CONNECT example.test:443 HTTP/1.1\r\n")
        assert upstream.header(0, "Proxy-Authorization") == _basic("bob", "secret")

    @pytest.mark.asyncio
    async def test_upstream_refusal_relayed(self) -> None:
        upstream = _Recorder(b"HTTP/1.1 407 Proxy Authentication Required\r\nContent-Length: 0\r\n\r\n")
        proxy = await ForwardingProxy.start()
        try:
            async with _serve(upstream) as port:
                proxy.set_upstream(ProxyCredential(f"127.0.0.1:{port}", "bob", "wrong"))
                response = await _request(proxy, b"CONNECT example.test:443 HTTP/1.1\r\n\r\n")
        finally:
            await proxy.close()

        assert response.startswith(b"HTTP/1.1 407")

    @pytest.mark.asyncio
    async def test_unparsable_upstream_gives_502(self) -> None:
        proxy = await ForwardingProxy.start()
        try:
            proxy.set_upstream(ProxyCredential("http://"))
            response = await _request(proxy, _get("http://example.test/"))
        finally:
            await proxy.close()

        assert response.startswith(b"HTTP/1.1 502")

    @pytest.mark.asyncio
    async def test_upstream_change_applies_to_next_connection(self) -> None:
        origin = _origin()
        upstream = _upstream()
        proxy = await ForwardingProxy.start()
        try:
            async with _serve(origin) as origin_port, _serve(upstream) as upstream_port:
                url = f"http://127.0.0.1:{origin_port}/"
                first = await _request(proxy, _get(url))
                proxy.set_upstream(ProxyCredential(f"127.0.0.1:{upstream_port}", "u", "p"))
                second = await _request(proxy, _get(url))
                proxy.set_upstream(None)
                third = await _request(proxy, _get(url))
        finally:
            await proxy.close()

        assert first.endswith(b"origin")
        assert second.endswith(b"upstream")
        assert third.endswith(b"origin")
        assert len(origin.heads) == 2
        assert len(upstream.heads) == 1


class _KeepAliveUpstream:
    """Upstream proxy that serves requests on one connection until told to close."""

    def __init__(self, tag: bytes) -> None:
        self.tag = tag
        self.heads: list[str] = []

    async def __call__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                try:
                    head = (await reader.readuntil(b"\r\n\r\n")).decode("latin-1")
                except asyncio.IncompleteReadError:
                    break
                self.heads.append(head)
                writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: %d\r\n\r\n" % len(self.tag) + self.tag)
                await writer.drain()
                if "\r\nconnection: close" in head.lower():
                    break
        finally:
            writer.close()


class TestUpstreamRotation:
    @pytest.mark.asyncio
    async def test_keep_alive_request_does_not_pin_old_upstream(self) -> None:
        first, second = _KeepAliveUpstream(b"AAAA"), _KeepAliveUpstream(b"BBBB")
        proxy = await ForwardingProxy.start()
        try:
            async with _serve(first) as first_port, _serve(second) as second_port:
                proxy.set_upstream(ProxyCredential(f"127.0.0.1:{first_port}", "u", "p"))
                reader, writer = await asyncio.open_connection("127.0.0.1", proxy.port)
                writer.write(_get("http://example.test/one"))
                await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout=5)
                body = await asyncio.wait_for(reader.readexactly(4), timeout=5)
                # The client connection ends with the response.
                rest = await asyncio.wait_for(reader.read(), timeout=5)
                writer.close()

                proxy.set_upstream(ProxyCredential(f"127.0.0.1:{second_port}", "u", "p"))
                response = await _request(proxy, _get("http://example.test/two"))
        finally:
            await proxy.close()

        assert body == b"AAAA"
        assert rest == b""
        assert response.endswith(b"BBBB")
        assert len(first.heads) == 1
        assert len(second.heads) == 1

    @pytest.mark.asyncio
    async def test_upstream_request_drops_hop_headers(self) -> None:
        upstream = _upstream()
        proxy = await ForwardingProxy.start()
        try:
            async with _serve(upstream) as port:
                proxy.set_upstream(ProxyCredential(f"127.0.0.1:{port}", "alice", "pw"))
                await _request(proxy, _get("http://example.test/"))
        finally:
            await proxy.close()

        assert upstream.header(0, "Proxy-Connection") is None
        assert upstream.header(0, "Connection") == "close"
        assert upstream.header(0, "Proxy-Authorization") == _basic("alice", "pw")

    @pytest.mark.asyncio
    async def test_non_numeric_upstream_port_gives_502(self) -> None:
        proxy = await ForwardingProxy.start()
        try:
            proxy.set_upstream(ProxyCredential("gw.example.net:abc", "u", "p"))
            response = await _request(proxy, _get("http://example.test/"))
        finally:
            await proxy.close()

        assert response.startswith(b"HTTP/1.1 502")
