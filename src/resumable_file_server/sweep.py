"""Expiry and retention sweeps.

``select_expired`` and ``select_purgeable`` are pure functions over upload
records; the upload manager applies their result. ``cleanup_old_files`` is the
offline retention sweep over the storage root.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Iterable

from .models import Upload

logger = logging.getLogger(__name__)

DAY = 24 * 60 * 60

# Placeholder kept so the storage root survives in version control
KEEP_FILES = frozenset({".gitkeep"})


def select_expired(uploads: Iterable[Upload], now: float, max_age: float) -> list[str]:
    """Return ids of live uploads idle for longer than ``max_age`` seconds."""
    return [
        upload.id
        for upload in uploads
        if not upload.status.is_terminal and now - upload.last_activity_at > max_age
    ]


def select_purgeable(uploads: Iterable[Upload], now: float, max_age: float) -> list[str]:
    """Return ids of terminal upload records old enough to forget."""
    return [
        upload.id
        for upload in uploads
        if upload.status.is_terminal and now - upload.last_activity_at > max_age
    ]


@dataclass
class CleanupResult:
    deleted: int = 0
    freed_bytes: int = 0


def cleanup_old_files(
    directory: str,
    max_age: float,
    now: float | None = None,
    keep: frozenset[str] = KEEP_FILES,
) -> CleanupResult:
    """Delete regular files in ``directory`` older than ``max_age`` seconds.

    Partial and finalized files are treated alike. Age is measured from the
    last modification time.
    """
    now = time.time() if now is None else now
    result = CleanupResult()

    for name in sorted(os.listdir(directory)):
        if name in keep:
            continue
        path = os.path.join(directory, name)
        try:
            stats = os.stat(path)
        except FileNotFoundError:
            continue
        if not os.path.isfile(path) or now - stats.st_mtime <= max_age:
            continue

        os.remove(path)
        result.deleted += 1
        result.freed_bytes += stats.st_size
        logger.info(f"Deleted: {name} ({stats.st_size / 1024 / 1024:.2f}MB)")

    return result
