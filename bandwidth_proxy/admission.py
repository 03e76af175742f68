"""Per-worker admission control: bounded active requests with a FIFO wait queue."""
import asyncio
import logging
from collections import deque
from typing import Optional

from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger("proxy.admission")

UNBOUNDED = -1


class QueueFull(Exception):
    """Raised when a request arrives while the wait queue is at its limit."""


class RequestQueue:
    """
    Admits up to `active_limit` requests at once; later arrivals wait in
    arrival order. When `queued_limit` is not UNBOUNDED, arrivals that would
    make the wait queue longer than it are rejected.
    """

    def __init__(self, active_limit: int, queued_limit: int = UNBOUNDED):
        if active_limit < 1:
            raise ValueError("active_limit must be >= 1; leave it unset to disable admission control")
        self.active_limit = active_limit
        self.queued_limit = queued_limit
        self.active = 0
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def queued(self) -> int:
        return len(self._waiters)

    async def acquire(self) -> None:
        if self.active < self.active_limit and not self._waiters:
            self.active += 1
            return
        if self.queued_limit != UNBOUNDED and len(self._waiters) >= self.queued_limit:
            raise QueueFull(f"{len(self._waiters)} requests already queued")

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # slot was handed over just before cancellation; pass it on
                self.release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        """Hand the slot to the oldest waiter, or free it."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self.active -= 1


class AdmissionMiddleware:
    """ASGI middleware placing every HTTP request behind a RequestQueue."""

    def __init__(self, app: ASGIApp, queue: Optional[RequestQueue] = None) -> None:
        self.app = app
        self.queue = queue

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or self.queue is None:
            await self.app(scope, receive, send)
            return

        try:
            await self.queue.acquire()
        except QueueFull as e:
            logger.warning("Rejecting %s: %s", scope.get("path", ""), e)
            response = PlainTextResponse("Service Unavailable", status_code=503)
            await response(scope, receive, send)
            return

        try:
            await self.app(scope, receive, send)
        finally:
            self.queue.release()
