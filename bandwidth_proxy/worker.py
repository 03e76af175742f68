"""Worker entry mode: bind the shared port and serve the app with uvicorn."""
import logging
import os
import signal
import socket
from typing import Optional

import uvicorn

from bandwidth_proxy.config import HOST, LOG_LEVEL, PORT

logger = logging.getLogger("proxy.worker")


def bind_shared_socket(host: str = HOST, port: int = PORT) -> socket.socket:
    """Listening socket that sibling workers can bind too; the kernel spreads connections."""
    if not hasattr(socket, "SO_REUSEPORT"):
        raise RuntimeError("SO_REUSEPORT is not available on this platform; run a single worker instead")
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
    sock.bind((host, port))
    sock.listen(socket.SOMAXCONN)
    sock.set_inheritable(True)
    return sock


def run_worker(host: str = HOST, port: int = PORT, sock: Optional[socket.socket] = None) -> None:
    # drop handlers inherited from the supervisor
    signal.signal(signal.SIGTERM, signal.SIG_DFL)
    signal.signal(signal.SIGINT, signal.SIG_DFL)
    sock = sock or bind_shared_socket(host, port)
    logger.info("Worker process %s listening on %s:%s", os.getpid(), host, port)
    config = uvicorn.Config(
        "bandwidth_proxy.main:app",
        log_level=LOG_LEVEL.lower(),
        access_log=False,
        lifespan="on",
    )
    uvicorn.Server(config).run(sockets=[sock])


if __name__ == "__main__":
    run_worker()
