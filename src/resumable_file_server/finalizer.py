"""Finalization of completed uploads.

When an upload reaches its declared size the partial file is renamed to
``<name>--<id><ext>`` on a detached thread. The rename waits for:

1. the handoff from the request that completed the upload, signalled once its
   response has been flushed (bounded by a grace period), and
2. any in-flight status read of the upload to finish.

A failed rename falls back to removing the upload's files.
"""

import logging
import threading
from typing import TYPE_CHECKING

from .config import DEFAULT_FINALIZE_GRACE
from .models import Upload
from .protocol import UploadStore
from .storage import build_final_name

if TYPE_CHECKING:
    from .manager import UploadManager

logger = logging.getLogger(__name__)

# Longest wait for status reads to drain before renaming anyway
READER_DRAIN_TIMEOUT = 5.0


class Finalizer:
    """Runs the rename for each completed upload exactly once.

    Args:
        manager: Upload manager tracking status readers and final names.
        store: Storage backend performing the rename.
        grace: Longest wait for the response-sent handoff, in seconds.
    """

    def __init__(
        self,
        manager: "UploadManager",
        store: UploadStore,
        grace: float = DEFAULT_FINALIZE_GRACE,
    ):
        self._manager = manager
        self._store = store
        self._grace = grace
        self._scheduled: set[str] = set()
        self._handoffs: dict[str, threading.Event] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def schedule(self, upload: Upload) -> bool:
        """Start finalizing ``upload`` in the background.

        Returns:
            False if the upload was already scheduled before.
        """
        with self._lock:
            if upload.id in self._scheduled:
                return False
            self._scheduled.add(upload.id)
            handoff = threading.Event()
            self._handoffs[upload.id] = handoff
            thread = threading.Thread(
                target=self._run,
                args=(upload, handoff),
                name=f"finalize-{upload.id[:8]}",
                daemon=True,
            )
            self._threads[upload.id] = thread
            thread.start()

        logger.info(f"Upload finished: {upload.id}")
        return True

    def release(self, upload_id: str) -> None:
        """Signal that the response completing ``upload_id`` was sent."""
        with self._lock:
            handoff = self._handoffs.get(upload_id)
        if handoff is not None:
            handoff.set()

    def is_scheduled(self, upload_id: str) -> bool:
        with self._lock:
            return upload_id in self._scheduled

    def forget(self, upload_id: str) -> None:
        """Drop bookkeeping for a purged upload."""
        with self._lock:
            if upload_id not in self._threads:
                self._scheduled.discard(upload_id)

    def join(self, timeout: float | None = None) -> None:
        """Wait for running finalizations to finish."""
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)

    def _run(self, upload: Upload, handoff: threading.Event) -> None:
        try:
            if not handoff.wait(self._grace):
                logger.debug(f"No response handoff for {upload.id}, finalizing after grace")
            if not self._manager.wait_for_readers(upload.id, READER_DRAIN_TIMEOUT):
                logger.warning(f"Status reads still running for {upload.id}, renaming anyway")

            new_name = build_final_name(upload.filename, upload.id)
            self._store.finalize(upload.id, new_name)
            self._manager.mark_finalized(upload.id, new_name)
            logger.info(f"File renamed to: {new_name}")
        except Exception as e:
            # Detached from any request: contain the failure and clean up
            logger.error(f"Error in rename for {upload.id}: {e}", exc_info=True)
            self._manager.mark_removed(upload.id)
            try:
                self._store.remove(upload.id)
            except Exception:
                logger.exception(f"Error cleaning up upload {upload.id}")
        finally:
            with self._lock:
                self._handoffs.pop(upload.id, None)
                self._threads.pop(upload.id, None)
