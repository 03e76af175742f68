"""Supervisor entry mode: keep a fixed number of worker processes alive."""
import logging
import multiprocessing
import os
import signal
from multiprocessing.connection import wait
from typing import Callable, Optional

from bandwidth_proxy.config import resolve_cluster_size
from bandwidth_proxy.worker import run_worker

logger = logging.getLogger("proxy.cluster")


class ClusterSupervisor:
    """
    Starts `size` workers and replaces any that exit while the supervisor is
    running. Restarts are immediate and unlimited. The supervisor itself
    never handles requests.
    """

    def __init__(self, size: int, target: Callable = run_worker, args: tuple = ()):
        self.size = size
        self.target = target
        self.args = args
        self.workers: list[multiprocessing.Process] = []
        self.restarts = 0
        self._stopping = False

    def spawn(self) -> multiprocessing.Process:
        process = multiprocessing.Process(target=self.target, args=self.args, daemon=False)
        process.start()
        self.workers.append(process)
        logger.info("Worker process %s started", process.pid)
        return process

    def start(self) -> None:
        logger.info("Primary process %s is running, starting %s workers", os.getpid(), self.size)
        for _ in range(self.size):
            self.spawn()

    def alive(self) -> list[multiprocessing.Process]:
        return [p for p in self.workers if p.is_alive()]

    def reap(self) -> int:
        """Replace dead workers. Returns the number of replacements."""
        replaced = 0
        for process in list(self.workers):
            if process.is_alive():
                continue
            process.join()
            self.workers.remove(process)
            if self._stopping:
                continue
            logger.warning("Worker process %s died (exit code %s)", process.pid, process.exitcode)
            self.spawn()
            self.restarts += 1
            replaced += 1
        return replaced

    def run(self, poll_interval: float = 1.0) -> None:
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)
        self.start()
        while not self._stopping:
            wait([p.sentinel for p in self.workers], timeout=poll_interval)
            if not self._stopping:
                self.reap()
        self.stop()

    def stop(self, timeout: float = 10.0) -> None:
        self._stopping = True
        for process in self.workers:
            if process.is_alive():
                process.terminate()
        for process in self.workers:
            process.join(timeout)
            if process.is_alive():
                process.kill()
                process.join()
        self.workers.clear()

    def _handle_signal(self, signum, _frame) -> None:
        logger.info("Primary process %s received signal %s, stopping workers", os.getpid(), signum)
        self._stopping = True


def main(size: Optional[int] = None) -> None:
    ClusterSupervisor(size or resolve_cluster_size()).run()


if __name__ == "__main__":
    main()
