"""Proxy configuration. Loads from environment and .env file."""
import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
# Load .env from cwd, then project root .env
load_dotenv()
load_dotenv(BASE_DIR / ".env")


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return int(raw)


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw == "true"


# Identification body for requests without a url (used by clients as a health check)
PROXY_IDENTIFIER = "bandwidth-hero-proxy"

# Server (for uvicorn)
HOST = os.getenv("HOST", "0.0.0.0")
PORT = _env_int("PORT", 80)

# Process pool
MAX_CLUSTER_SIZE = _env_int("MAX_CLUSTER_SIZE", 4)
CLUSTER_SIZE = _env_int("CLUSTER_SIZE", None)

# Admission control per worker. Unset active limit disables queueing entirely.
ACTIVE_LIMIT = _env_int("QUEUE_SIZE_PER_CLUSTER", None)
QUEUED_LIMIT = _env_int("QUEUED_LIMIT_PER_CLUSTER", -1)

# Codec (Pillow)
CODEC_CONCURRENCY = _env_int("CODEC_CONCURRENCY", 0)
CODEC_CACHE = _env_flag("CODEC_CACHE", True)
CODEC_SIMD = _env_flag("CODEC_SIMD", True)
DEFAULT_QUALITY = _env_int("DEFAULT_QUALITY", 80)

# Upstream fetch
EXTERNAL_REQUEST_TIMEOUT = _env_int("EXTERNAL_REQUEST_TIMEOUT", 60000)  # ms
EXTERNAL_REQUEST_RETRIES = _env_int("EXTERNAL_REQUEST_RETRIES", 5)
EXTERNAL_REQUEST_REDIRECTS = _env_int("EXTERNAL_REQUEST_REDIRECTS", 10)

# Compression strategy
USE_BEST_COMPRESSION_FORMAT = _env_flag("USE_BEST_COMPRESSION_FORMAT")
ENABLE_ALTERNATIVE_FORMAT = _env_flag("ENABLE_ALTERNATIVE_FORMAT")

# Idle memory reclamation (seconds)
IDLE_GC_INTERVAL = float(os.getenv("IDLE_GC_INTERVAL", "5"))
IDLE_GC_MIN_IDLE = float(os.getenv("IDLE_GC_MIN_IDLE", "10"))
IDLE_GC_MAX_IDLE = float(os.getenv("IDLE_GC_MAX_IDLE", "60"))


def resolve_cluster_size(
    cpu_count: Optional[int] = None,
    max_size: Optional[int] = None,
    explicit: Optional[int] = None,
) -> int:
    """Explicit CLUSTER_SIZE wins; otherwise min(cpu count, MAX_CLUSTER_SIZE)."""
    if explicit is None:
        explicit = CLUSTER_SIZE
    if explicit is not None:
        return max(1, explicit)
    if cpu_count is None:
        cpu_count = os.cpu_count() or 1
    if max_size is None:
        max_size = MAX_CLUSTER_SIZE
    return max(1, min(cpu_count, max_size))


# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("proxy")
