"""Upstream fetch with bounded timeout, retries and redirects."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

import httpx

from bandwidth_proxy.config import (
    EXTERNAL_REQUEST_REDIRECTS,
    EXTERNAL_REQUEST_RETRIES,
    EXTERNAL_REQUEST_TIMEOUT,
)

logger = logging.getLogger("proxy.fetcher")

# Inbound headers that must not reach the upstream server
_DROPPED_REQUEST_HEADERS = {"host", "content-length"}

_UPSTREAM_OVERRIDES = {
    "accept-encoding": "*",
    "accept": "*/*",
    "cache-control": "no-cache",
    "pragma": "no-cache",
    "connection": "close",
}


class FetchError(Exception):
    """Any failure to obtain the upstream body: network, timeout, retries, redirects, status."""

    def __init__(self, url: str, reason: str):
        super().__init__(reason)
        self.url = url
        self.reason = reason


@dataclass
class FetchResult:
    body: bytes
    headers: httpx.Headers
    status_code: int


def build_upstream_headers(inbound: Mapping[str, str]) -> dict[str, str]:
    """Forward the client's headers (cookies and credentials included) minus host, uncached."""
    headers = {
        key.lower(): value
        for key, value in inbound.items()
        if key.lower() not in _DROPPED_REQUEST_HEADERS
    }
    headers.update(_UPSTREAM_OVERRIDES)
    return headers


class UpstreamFetcher:
    """Owns the worker's httpx client; create in startup, close in shutdown."""

    def __init__(
        self,
        timeout_ms: int = EXTERNAL_REQUEST_TIMEOUT,
        retries: int = EXTERNAL_REQUEST_RETRIES,
        max_redirects: int = EXTERNAL_REQUEST_REDIRECTS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout_ms = timeout_ms
        self.retries = max(0, retries)
        self.max_redirects = max_redirects
        self._transport = transport
        self.http_client: Optional[httpx.AsyncClient] = None

    async def startup(self) -> None:
        self.http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_ms / 1000),
            follow_redirects=True,
            max_redirects=self.max_redirects,
            transport=self._transport,
        )

    async def shutdown(self) -> None:
        if self.http_client:
            await self.http_client.aclose()
            self.http_client = None

    async def fetch(self, url: str, headers: Mapping[str, str]) -> FetchResult:
        """GET `url` and buffer the whole body. Raises FetchError on any failure."""
        if self.http_client is None:
            await self.startup()

        attempts = self.retries + 1
        for attempt in range(attempts):
            try:
                # deadline for the whole attempt, body included
                response = await asyncio.wait_for(
                    self.http_client.get(url, headers=dict(headers)), self.timeout_ms / 1000
                )
                response.raise_for_status()
                return FetchResult(
                    body=response.content,
                    headers=response.headers,
                    status_code=response.status_code,
                )
            except httpx.UnsupportedProtocol as e:
                raise FetchError(url, str(e)) from e
            except (httpx.TransportError, asyncio.TimeoutError) as e:
                if attempt >= attempts - 1:
                    reason = str(e) if isinstance(e, httpx.TransportError) else f"timeout of {self.timeout_ms}ms exceeded"
                    raise FetchError(url, f"{type(e).__name__}: {reason} (after {attempts} attempts)") from e
                logger.warning("Fetch of %s failed (attempt %d), retrying: %s", url, attempt + 1, e)
            except httpx.TooManyRedirects as e:
                raise FetchError(url, f"Too many redirects (max {self.max_redirects})") from e
            except httpx.HTTPStatusError as e:
                raise FetchError(url, f"Upstream returned status {e.response.status_code}") from e
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                raise FetchError(url, str(e)) from e
        raise FetchError(url, "Retry budget exhausted")
