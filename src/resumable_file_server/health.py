"""Health report: disk space of the storage root and process memory."""

import logging
import time
from datetime import datetime, timezone

import psutil

from .protocol import UploadStore

logger = logging.getLogger(__name__)


def format_gb(num_bytes: float) -> str:
    return f"{num_bytes / 1024 / 1024 / 1024:.2f}GB"


def format_mb(num_bytes: float) -> str:
    return f"{num_bytes / 1024 / 1024:.2f}MB"


def has_free_space(store: UploadStore, min_free_space: int) -> bool:
    """Sample free space in the storage root against the configured floor.

    A failing probe counts as not enough space.
    """
    try:
        _, _, free = store.disk_usage()
    except OSError as e:
        logger.error(f"Error checking disk space: {e}")
        return False

    logger.debug(f"Disk space: {format_gb(free)} free")
    if free < min_free_space:
        logger.error(f"Low disk space: {format_gb(free)} free")
        return False
    return True


def collect_health(
    store: UploadStore,
    min_free_space: int,
    started_at: float,
    chunk_size: int | None = None,
) -> tuple[int, dict]:
    """Build the health report.

    Returns:
        Tuple of (HTTP status, JSON body). The status is 200 while free space
        is above the floor and 503 otherwise or when probing fails.
    """
    try:
        total, used, free = store.disk_usage()
        process = psutil.Process()
        rss = process.memory_info().rss
        memory_total = psutil.virtual_memory().total
    except (OSError, psutil.Error) as e:
        logger.error(f"Health check failed: {e}")
        return 503, {"status": "error", "error": str(e)}

    healthy = free >= min_free_space
    body = {
        "status": "healthy" if healthy else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.time() - started_at, 3),
        "disk": {
            "free": format_gb(free),
            "total": format_gb(total),
            "used": format_gb(used),
        },
        "memory": {
            "used": format_mb(rss),
            "total": format_mb(memory_total),
        },
    }
    if chunk_size:
        body["chunkSize"] = chunk_size
    return (200 if healthy else 503), body
