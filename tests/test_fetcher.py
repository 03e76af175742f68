"""Tests for the upstream fetcher."""

import asyncio
import time

import httpx
import pytest

from bandwidth_proxy.fetcher import FetchError, UpstreamFetcher, build_upstream_headers


def make_fetcher(handler, **kwargs) -> UpstreamFetcher:
    return UpstreamFetcher(transport=httpx.MockTransport(handler), **kwargs)


class TestBuildUpstreamHeaders:
    def test_host_removed_and_cache_headers_overridden(self):
        headers = build_upstream_headers({
            "Host": "proxy.local",
            "Cookie": "session=1",
            "Authorization": "Basic abc",
            "Accept": "image/webp",
            "Cache-Control": "max-age=0",
            "User-Agent": "Bandwidth Hero",
        })
        assert "host" not in headers
        assert headers["cookie"] == "session=1"
        assert headers["authorization"] == "Basic abc"
        assert headers["user-agent"] == "Bandwidth Hero"
        assert headers["accept"] == "*/*"
        assert headers["accept-encoding"] == "*"
        assert headers["cache-control"] == "no-cache"
        assert headers["pragma"] == "no-cache"
        assert headers["connection"] == "close"


class TestUpstreamFetcher:
    @pytest.mark.asyncio
    async def test_returns_full_body_and_headers(self):
        def handler(request):
            assert request.headers["cookie"] == "a=b"
            return httpx.Response(200, content=b"\x00\x01binary", headers={"content-type": "image/png"})

        fetcher = make_fetcher(handler)
        await fetcher.startup()
        try:
            result = await fetcher.fetch("http://images.test/a.png", {"cookie": "a=b"})
        finally:
            await fetcher.shutdown()
        assert result.body == b"\x00\x01binary"
        assert result.headers["content-type"] == "image/png"
        assert result.status_code == 200

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(200, content=b"ok")

        fetcher = make_fetcher(handler, retries=5)
        result = await fetcher.fetch("http://images.test/a.png", {})
        await fetcher.shutdown()
        assert result.body == b"ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        fetcher = make_fetcher(handler, retries=2)
        with pytest.raises(FetchError) as excinfo:
            await fetcher.fetch("http://images.test/a.png", {})
        await fetcher.shutdown()
        assert len(calls) == 3
        assert "ReadTimeout" in excinfo.value.reason

    @pytest.mark.asyncio
    async def test_status_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404)

        fetcher = make_fetcher(handler, retries=5)
        with pytest.raises(FetchError) as excinfo:
            await fetcher.fetch("http://images.test/missing.png", {})
        await fetcher.shutdown()
        assert len(calls) == 1
        assert "404" in excinfo.value.reason

    @pytest.mark.asyncio
    async def test_follows_redirects(self):
        def handler(request):
            if request.url.path == "/old.png":
                return httpx.Response(301, headers={"location": "http://images.test/new.png"})
            return httpx.Response(200, content=b"moved")

        fetcher = make_fetcher(handler)
        result = await fetcher.fetch("http://images.test/old.png", {})
        await fetcher.shutdown()
        assert result.body == b"moved"

    @pytest.mark.asyncio
    async def test_redirect_budget_exhausted(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(302, headers={"location": f"http://images.test/{len(calls)}.png"})

        fetcher = make_fetcher(handler, max_redirects=2, retries=3)
        with pytest.raises(FetchError) as excinfo:
            await fetcher.fetch("http://images.test/0.png", {})
        await fetcher.shutdown()
        assert "redirects" in excinfo.value.reason
        assert len(calls) == 3


class TestDeadline:
    """The timeout bounds the whole attempt, including a slowly trickled body."""

    @staticmethod
    async def start_trickling_server(connections: list, stop: asyncio.Event):
        async def handle(reader, writer):
            connections.append(writer)
            await reader.readuntil(b"\r\n\r\n")
            writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: 20\r\nConnection: close\r\n\r\n")
            try:
                for _ in range(10):
                    if stop.is_set():
                        break
                    writer.write(b"xx")
                    await writer.drain()
                    await asyncio.sleep(0.3)
            except ConnectionError:
                pass
            finally:
                writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        return server, server.sockets[0].getsockname()[1]

    @pytest.mark.asyncio
    async def test_slow_body_hits_deadline(self):
        connections, stop = [], asyncio.Event()
        server, port = await self.start_trickling_server(connections, stop)
        fetcher = UpstreamFetcher(timeout_ms=500, retries=0)
        started = time.monotonic()
        try:
            with pytest.raises(FetchError) as excinfo:
                await fetcher.fetch(f"http://127.0.0.1:{port}/slow.png", {})
            elapsed = time.monotonic() - started
        finally:
            stop.set()
            await fetcher.shutdown()
            server.close()
            await server.wait_closed()
        assert elapsed < 1.5
        assert "500ms" in excinfo.value.reason
        assert len(connections) == 1

    @pytest.mark.asyncio
    async def test_deadline_is_retried(self):
        connections, stop = [], asyncio.Event()
        server, port = await self.start_trickling_server(connections, stop)
        fetcher = UpstreamFetcher(timeout_ms=300, retries=1)
        try:
            with pytest.raises(FetchError):
                await fetcher.fetch(f"http://127.0.0.1:{port}/slow.png", {})
        finally:
            stop.set()
            await fetcher.shutdown()
            server.close()
            await server.wait_closed()
        assert len(connections) == 2
