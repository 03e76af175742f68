"""Response emitter: image/redirect responses, send guard and completion logging."""
import logging
import os
from typing import Callable, Mapping, Optional

import httpx
from starlette.background import BackgroundTask
from starlette.responses import RedirectResponse, Response
from starlette.types import Message, Receive, Scope, Send

from bandwidth_proxy.compression.models import CompressionDecision, RequestContext
from bandwidth_proxy.compression.service import describe_sizes, format_record
from bandwidth_proxy.reclaimer import reclaim_memory

logger = logging.getLogger("proxy.api")

# Upstream headers never copied onto the client response
_SKIPPED_UPSTREAM_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
    "content-encoding",
    "content-length",
    "content-type",
}


def image_response(decision: CompressionDecision, upstream_headers: Optional[httpx.Headers] = None) -> Response:
    image = decision.image
    response = Response(
        content=image.data,
        status_code=200,
        headers={
            "content-encoding": "identity",
            "content-type": image.format.mime_type,
            "content-length": str(image.size),
            "x-original-size": str(decision.size_info.original),
            "x-bytes-saved": str(decision.size_info.saved),
        },
    )
    if upstream_headers is not None:
        for key, value in upstream_headers.multi_items():
            if key.lower() not in _SKIPPED_UPSTREAM_HEADERS:
                response.headers.append(key, value)
    return response


def redirect_response(url: str) -> Response:
    return RedirectResponse(url, status_code=302)


def error_record(context: RequestContext, headers: Mapping[str, str], reason: str) -> dict:
    return {
        "worker": os.getpid(),
        "params": context.as_log_dict(),
        "headers": dict(headers),
        "body": {"error": "Cannot compress!", "reason": reason},
    }


def completion_task(
    response: Response,
    decision: CompressionDecision,
    request_headers: Mapping[str, str],
) -> BackgroundTask:
    """Logs the completion record once the response has been sent, then hints a collection."""

    def log_completion() -> None:
        logger.info(format_record({
            "worker": os.getpid(),
            "params": decision.context.as_log_dict(),
            "req_headers": dict(request_headers),
            "res_headers": response.headers.items(),
            "body": describe_sizes(decision.size_info, decision.sizes),
        }))
        reclaim_memory(full=False)

    return BackgroundTask(log_completion)


class GuardedResponse(Response):
    """
    Sends `inner`, redirecting to `fallback_url` if it fails before the
    response start went out. After that point failures are only logged.
    """

    def __init__(
        self,
        inner: Response,
        fallback_url: str,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.inner = inner
        self.fallback_url = fallback_url
        self.on_error = on_error
        self.status_code = inner.status_code
        self.background = None
        self.headers_sent = False
        self.body_sent = False

    @property
    def headers(self):
        return self.inner.headers

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        async def tracking_send(message: Message) -> None:
            if message["type"] == "http.response.start":
                self.headers_sent = True
            await send(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                self.body_sent = True

        try:
            await self.inner(scope, receive, tracking_send)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            if self.on_error is not None:
                self.on_error(reason)
            else:
                logger.error("Response for %s failed: %s", self.fallback_url, reason)
            if not self.headers_sent:
                await redirect_response(self.fallback_url)(scope, receive, send)
            elif not self.body_sent and self.inner.background is not None:
                # the inner response never reached its completion task
                await self.inner.background()
                return
            reclaim_memory(full=False)
