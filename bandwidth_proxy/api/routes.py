"""HTTP surface: the image proxy endpoint and favicon."""
import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, Response
from starlette.background import BackgroundTask

from bandwidth_proxy.api.responses import (
    GuardedResponse,
    completion_task,
    error_record,
    image_response,
    redirect_response,
)
from bandwidth_proxy.compression.models import DecisionAction
from bandwidth_proxy.compression.service import format_record
from bandwidth_proxy.config import PROXY_IDENTIFIER
from bandwidth_proxy.fetcher import build_upstream_headers
from bandwidth_proxy.params import parse_request_parameters
from bandwidth_proxy.reclaimer import reclaim_memory

logger = logging.getLogger("proxy.api")
router = APIRouter(tags=["proxy"])


@router.get("/favicon.ico")
def favicon():
    return Response(status_code=204)


@router.get("/")
async def proxy_image(request: Request):
    """Fetch `url`, recompress it and send whichever is smaller, else redirect to the original."""
    context = parse_request_parameters(request.url.query)
    if context is None:
        return PlainTextResponse(PROXY_IDENTIFIER)

    request.app.state.worker.touch()
    upstream_headers = build_upstream_headers(request.headers)

    def log_error(reason: str) -> None:
        logger.error(format_record(error_record(context, upstream_headers, reason)))

    try:
        fetched = await request.app.state.fetcher.fetch(context.url, upstream_headers)
        decision = await request.app.state.compression.decide(fetched.body, context)
    except Exception as e:
        log_error(getattr(e, "reason", None) or str(e) or type(e).__name__)
        response = redirect_response(context.url)
        response.background = BackgroundTask(reclaim_memory, full=False)
        return response

    if decision.action is DecisionAction.SERVE:
        response = image_response(decision, fetched.headers)
    else:
        response = redirect_response(context.url)
    response.background = completion_task(response, decision, upstream_headers)
    return GuardedResponse(response, context.url, on_error=log_error)
