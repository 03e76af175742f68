"""Shared pytest fixtures for proxy tests."""

import io

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from bandwidth_proxy.compression.models import CompressedImage, ImageFormat
from bandwidth_proxy.compression.service import CompressionService
from bandwidth_proxy.fetcher import UpstreamFetcher
from bandwidth_proxy.main import create_app

UPSTREAM_URL = "http://images.test/cat.png"


class FakeEncoder:
    """Encoder returning payloads of fixed size per format, recording every call."""

    def __init__(self, sizes: dict[str, int]):
        self.sizes = sizes
        self.calls: list[tuple[str, int, bool]] = []

    def __call__(self, data: bytes, fmt: ImageFormat, quality: int, grayscale: bool) -> CompressedImage:
        self.calls.append((fmt.value, quality, grayscale))
        return CompressedImage(data=b"c" * self.sizes[fmt.value], format=fmt, width=10, height=10)

    @property
    def formats(self) -> list[str]:
        return [call[0] for call in self.calls]


class Upstream:
    """MockTransport handler serving a fixed body and recording requests."""

    def __init__(self, body: bytes = b"o" * 1000, headers: dict | list | None = None, error: Exception | None = None):
        self.body = body
        self.headers = headers or {"content-type": "image/png", "etag": '"abc"'}
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(200, content=self.body, headers=self.headers)


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def make_client():
    """Build a TestClient around an app wired to a fake upstream and encoder."""
    clients = []

    def factory(upstream, encoder, best_format=False, alternative_format=False, retries=0, **app_kwargs):
        fetcher = UpstreamFetcher(retries=retries, transport=httpx.MockTransport(upstream))
        service = CompressionService(
            best_format=best_format,
            alternative_format=alternative_format,
            concurrency=2,
            encoder=encoder,
        )
        app_kwargs.setdefault("active_limit", None)
        app = create_app(fetcher=fetcher, compression=service, **app_kwargs)
        client = TestClient(app, follow_redirects=False)
        client.__enter__()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.__exit__(None, None, None)


def make_image_bytes(mode: str = "RGB", size: tuple[int, int] = (64, 48), fmt: str = "PNG") -> bytes:
    color = {"RGB": (200, 30, 60), "RGBA": (200, 30, 60, 128), "L": 128, "P": 3}[mode]
    img = Image.new(mode, size, color)
    for x in range(size[0]):
        img.putpixel((x, x % size[1]), color if mode in ("L", "P") else tuple(255 - c for c in color))
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def png_bytes():
    return make_image_bytes()
