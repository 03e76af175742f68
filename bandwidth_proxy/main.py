"""FastAPI application entry point for one worker."""
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from bandwidth_proxy.admission import AdmissionMiddleware, RequestQueue
from bandwidth_proxy.api.routes import router
from bandwidth_proxy.compression.codec import configure_codec
from bandwidth_proxy.compression.service import CompressionService
from bandwidth_proxy.config import (
    ACTIVE_LIMIT,
    CODEC_CACHE,
    CODEC_SIMD,
    QUEUED_LIMIT,
    logger as config_logger,
)
from bandwidth_proxy.fetcher import UpstreamFetcher
from bandwidth_proxy.reclaimer import IdleReclaimer, WorkerState

logging.getLogger("uvicorn").setLevel(logging.INFO)


def create_app(
    fetcher: Optional[UpstreamFetcher] = None,
    compression: Optional[CompressionService] = None,
    active_limit: Optional[int] = ACTIVE_LIMIT,
    queued_limit: int = QUEUED_LIMIT,
    reclaimer: Optional[IdleReclaimer] = None,
) -> FastAPI:
    state = reclaimer.state if reclaimer is not None else WorkerState()
    reclaimer = reclaimer or IdleReclaimer(state)
    fetcher = fetcher or UpstreamFetcher()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_codec(cache=CODEC_CACHE, simd=CODEC_SIMD)
        if app.state.compression is None:
            app.state.compression = CompressionService()
        await fetcher.startup()
        reclaimer.start()
        config_logger.info("Worker process %s ready", os.getpid())
        yield
        await reclaimer.stop()
        await fetcher.shutdown()
        app.state.compression.shutdown()
        config_logger.info("Worker process %s shutting down", os.getpid())

    app = FastAPI(
        title="Bandwidth Proxy",
        description="Fetches remote images and serves a recompressed copy when it is smaller.",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.worker = state
    app.state.fetcher = fetcher
    app.state.compression = compression

    queue = RequestQueue(active_limit, queued_limit) if active_limit is not None else None
    app.add_middleware(AdmissionMiddleware, queue=queue)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    from bandwidth_proxy.worker import run_worker
    run_worker()
