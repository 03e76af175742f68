"""Idle-time memory reclamation for a worker process."""
import asyncio
import gc
import logging
import time
from typing import Callable, Optional

from bandwidth_proxy.config import IDLE_GC_INTERVAL, IDLE_GC_MAX_IDLE, IDLE_GC_MIN_IDLE

logger = logging.getLogger("proxy.reclaimer")


def reclaim_memory(full: bool = True) -> None:
    """Collection hint. The per-request hint only sweeps the youngest generation."""
    if full:
        gc.collect()
    else:
        gc.collect(0)


class WorkerState:
    """Process-wide state of one worker; owned by the app, shared with the reclaimer."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.last_request_at = clock()

    def touch(self) -> None:
        self.last_request_at = self._clock()

    def idle_for(self) -> float:
        return self._clock() - self.last_request_at


def in_reclaim_window(elapsed: float, lower: float = IDLE_GC_MIN_IDLE, upper: float = IDLE_GC_MAX_IDLE) -> bool:
    return lower < elapsed < upper


class IdleReclaimer:
    """Polls WorkerState and reclaims memory when the worker has gone quiet, but not for too long."""

    def __init__(
        self,
        state: WorkerState,
        interval: float = IDLE_GC_INTERVAL,
        lower: float = IDLE_GC_MIN_IDLE,
        upper: float = IDLE_GC_MAX_IDLE,
        reclaim: Callable[[], None] = reclaim_memory,
    ):
        self.state = state
        self.interval = interval
        self.lower = lower
        self.upper = upper
        self._reclaim = reclaim
        self._task: Optional[asyncio.Task] = None

    def tick(self) -> bool:
        """One poll. Returns True when a reclamation was triggered."""
        elapsed = self.state.idle_for()
        if not in_reclaim_window(elapsed, self.lower, self.upper):
            return False
        logger.debug("Idle for %.1fs, reclaiming memory", elapsed)
        self._reclaim()
        return True

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.tick()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
