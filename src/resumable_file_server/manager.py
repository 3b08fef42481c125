"""Upload state machine.

Lifecycle: created -> receiving -> completed | aborted | expired.

Appends to one upload are serialized by a per-upload lock held for the
duration of a single append; a second concurrent append fails with Conflict.
Different uploads only share the registry lock, which is never held across I/O.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from typing import BinaryIO, Callable, Iterator
from uuid import uuid4

from .config import DEFAULT_UPLOAD_MAX_AGE, ServerConfig
from .errors import (
    Conflict,
    ExtensionNotAllowed,
    Gone,
    InsufficientStorage,
    InvalidSize,
    NotFound,
    OffsetMismatch,
    SizeExceeded,
)
from .finalizer import Finalizer
from .health import has_free_space
from .models import Upload, UploadStatus
from .protocol import UploadStore
from .sweep import select_expired, select_purgeable

logger = logging.getLogger(__name__)

# Longest wait for an in-flight append before an abort gives up
ABORT_LOCK_TIMEOUT = 30.0


def _snapshot(upload: Upload) -> Upload:
    return replace(upload, metadata=dict(upload.metadata))


class UploadManager:
    """Owns every upload's state and drives the storage backend.

    Args:
        config: Server configuration (size limits, free-space floor, expiry).
        store: Storage backend for partial files and metadata records.
        finalizer: Finalization pipeline. Built from the config when omitted.
        clock: Wall-clock time source (overridable for tests).
    """

    def __init__(
        self,
        config: ServerConfig,
        store: UploadStore,
        finalizer: Finalizer | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._store = store
        self._clock = clock
        self._finalizer = finalizer or Finalizer(self, store, config.finalize_grace)
        self._uploads: dict[str, Upload] = {}
        self._append_locks: dict[str, threading.Lock] = {}
        self._readers: dict[str, int] = {}
        self._lock = threading.Lock()
        self._readers_changed = threading.Condition(self._lock)

    @property
    def store(self) -> UploadStore:
        return self._store

    @property
    def finalizer(self) -> Finalizer:
        return self._finalizer

    def create(self, size: int, metadata: dict[str, str] | None = None) -> Upload:
        """Register a new upload of ``size`` bytes.

        Raises:
            InvalidSize: If size is not positive or above max_file_size.
            ExtensionNotAllowed: If the filename extension is not allowed.
            InsufficientStorage: If free space is below min_free_space.
            StorageIO: If the partial file or record cannot be created.
        """
        if size <= 0:
            raise InvalidSize("Upload-Length must be a positive integer")
        if size > self._config.max_file_size:
            raise InvalidSize(
                f"Upload-Length {size} exceeds maximum of {self._config.max_file_size} bytes",
                status_code=413,
            )

        now = self._clock()
        upload = Upload(
            id=uuid4().hex,
            size=size,
            metadata=dict(metadata or {}),
            created_at=now,
            last_activity_at=now,
        )
        if not self._config.is_extension_allowed(upload.filename):
            raise ExtensionNotAllowed(
                f"File type not allowed: {upload.filename or '(no filename)'}"
            )
        # Sampled, never reserved: concurrent creates may all pass this check
        if not has_free_space(self._store, self._config.min_free_space):
            raise InsufficientStorage("Not enough free disk space for new uploads")

        self._store.create(upload)
        with self._lock:
            self._uploads[upload.id] = upload
            self._append_locks[upload.id] = threading.Lock()
            result = _snapshot(upload)

        logger.info(f"Upload created: {upload.id} ({size} bytes)")
        return result

    def apply_chunk(
        self,
        upload_id: str,
        chunk_offset: int,
        chunk: bytes | BinaryIO,
        length: int | None = None,
    ) -> int:
        """Append one chunk at ``chunk_offset`` and return the new offset.

        ``chunk`` is the chunk bytes, or a stream from which ``length`` bytes
        are read (an HTTP request body).

        The chunk is written and synced before the new offset is committed to
        the metadata record, and the in-memory offset moves only after that
        commit, so a failure at any point leaves the previous offset in force.

        Raises:
            NotFound: Unknown upload (Gone if aborted or expired).
            Conflict: Another append for this upload is in flight.
            OffsetMismatch: ``chunk_offset`` differs from the committed offset.
            SizeExceeded: The chunk would run past the declared size.
            IncompleteChunk: The stream ended before ``length`` bytes.
            StorageIO: The write or commit failed.
        """
        if isinstance(chunk, (bytes, bytearray, memoryview)):
            length = len(chunk)
        elif length is None:
            raise ValueError("length is required when chunk is a stream")

        append_lock = self._append_lock(upload_id)
        if not append_lock.acquire(blocking=False):
            raise Conflict(f"Another chunk for upload {upload_id} is being written")
        try:
            with self._lock:
                upload = self._get_live(upload_id)
                offset, size = upload.offset, upload.size

            if chunk_offset != offset:
                raise OffsetMismatch(offset, chunk_offset)
            end = chunk_offset + length
            if end > size:
                raise SizeExceeded(size, end)
            if length == 0:
                return offset

            self._store.write(upload_id, offset, chunk, length)
            now = self._clock()
            with self._lock:
                committed = replace(_snapshot(upload), offset=end, last_activity_at=now)
            self._store.commit(committed)

            with self._lock:
                upload.offset = end
                upload.last_activity_at = now
                upload.status = (
                    UploadStatus.COMPLETED if end == size else UploadStatus.RECEIVING
                )
                completed = _snapshot(upload) if end == size else None
        finally:
            append_lock.release()

        logger.debug(f"Progress [{upload_id}]: {end / size * 100:.2f}%")
        if completed is not None:
            self._finalizer.schedule(completed)
        return end

    def status(self, upload_id: str) -> Upload:
        """Return a snapshot of the upload, including terminal ones.

        Raises:
            NotFound: If the id is unknown.
        """
        with self._lock:
            upload = self._uploads.get(upload_id)
            if upload is None:
                raise NotFound(f"Upload not found: {upload_id}")
            return _snapshot(upload)

    def abort(self, upload_id: str) -> None:
        """Delete an upload's files. A no-op for terminal uploads.

        Raises:
            NotFound: If the id is unknown.
            Conflict: If an in-flight append does not finish in time.
        """
        with self._lock:
            upload = self._uploads.get(upload_id)
            if upload is None:
                raise NotFound(f"Upload not found: {upload_id}")
            if upload.status.is_terminal:
                return
            append_lock = self._append_locks.setdefault(upload_id, threading.Lock())

        if not append_lock.acquire(timeout=ABORT_LOCK_TIMEOUT):
            raise Conflict(f"Upload {upload_id} is busy, try again")
        try:
            with self._lock:
                if upload.status.is_terminal:
                    return
                upload.status = UploadStatus.ABORTED
                upload.last_activity_at = self._clock()
            self._store.remove(upload_id)
        finally:
            append_lock.release()
        logger.info(f"Upload aborted: {upload_id}")

    def expire_stale(self, now: float | None = None) -> list[str]:
        """Expire idle incomplete uploads and purge old terminal records.

        Uploads with an append in flight are skipped until the next sweep.
        An ``upload_max_age`` of 0 disables expiry; terminal records are then
        purged after DEFAULT_UPLOAD_MAX_AGE.

        Returns:
            Ids of the uploads expired by this sweep.
        """
        now = self._clock() if now is None else now
        max_age = self._config.upload_max_age
        with self._lock:
            candidates = (
                select_expired(self._uploads.values(), now, max_age) if max_age else []
            )
            purgeable = select_purgeable(
                self._uploads.values(), now, max_age or DEFAULT_UPLOAD_MAX_AGE
            )

        expired = []
        for upload_id in candidates:
            append_lock = self._append_locks.get(upload_id)
            if append_lock is None or not append_lock.acquire(blocking=False):
                continue
            try:
                with self._lock:
                    upload = self._uploads.get(upload_id)
                    if upload is None or upload.status.is_terminal:
                        continue
                    if now - upload.last_activity_at <= max_age:
                        continue
                    upload.status = UploadStatus.EXPIRED
                self._store.remove(upload_id)
                expired.append(upload_id)
                logger.info(f"Upload expired: {upload_id}")
            finally:
                append_lock.release()

        with self._lock:
            for upload_id in purgeable:
                upload = self._uploads.get(upload_id)
                if upload is None or not upload.status.is_terminal:
                    continue
                del self._uploads[upload_id]
                self._append_locks.pop(upload_id, None)
                self._finalizer.forget(upload_id)
        return expired

    def recover(self) -> int:
        """Re-register uploads persisted by a previous process.

        Partial files are cut back to their committed offset. Uploads whose
        committed offset already equals their size are finalized.

        Returns:
            Number of uploads recovered.
        """
        recovered = 0
        to_finalize = []
        for upload in self._store.load_records():
            if not self._store.exists(upload.id) or upload.offset > upload.size:
                logger.warning(f"Discarding inconsistent upload record: {upload.id}")
                self._store.remove(upload.id)
                continue

            length = self._store.length(upload.id)
            if length > upload.offset:
                logger.info(
                    f"Discarding {length - upload.offset} uncommitted bytes of {upload.id}"
                )
                self._store.truncate(upload.id, upload.offset)
            elif length < upload.offset:
                logger.warning(
                    f"Partial file of {upload.id} is shorter than its committed offset, "
                    f"resuming from {length}"
                )
                upload.offset = length
                self._store.commit(upload)

            if upload.offset == upload.size:
                upload.status = UploadStatus.COMPLETED
                to_finalize.append(_snapshot(upload))
            else:
                upload.status = (
                    UploadStatus.RECEIVING if upload.offset else UploadStatus.CREATED
                )

            with self._lock:
                self._uploads[upload.id] = upload
                self._append_locks[upload.id] = threading.Lock()
            recovered += 1

        for upload in to_finalize:
            self._finalizer.schedule(upload)
        if recovered:
            logger.info(f"Recovered {recovered} in-flight uploads")
        return recovered

    @contextmanager
    def reading(self, upload_id: str) -> Iterator[None]:
        """Mark a status read of ``upload_id`` as in flight."""
        with self._lock:
            self._readers[upload_id] = self._readers.get(upload_id, 0) + 1
        try:
            yield
        finally:
            with self._lock:
                remaining = self._readers[upload_id] - 1
                if remaining:
                    self._readers[upload_id] = remaining
                else:
                    del self._readers[upload_id]
                self._readers_changed.notify_all()

    def wait_for_readers(self, upload_id: str, timeout: float | None = None) -> bool:
        """Block until no status read of ``upload_id`` is in flight."""
        with self._readers_changed:
            return self._readers_changed.wait_for(
                lambda: upload_id not in self._readers, timeout
            )

    def response_sent(self, upload_id: str) -> None:
        """Handoff from the protocol layer once a completing response is out."""
        self._finalizer.release(upload_id)

    def mark_finalized(self, upload_id: str, final_name: str) -> None:
        with self._lock:
            upload = self._uploads.get(upload_id)
            if upload is not None:
                upload.final_name = final_name

    def mark_removed(self, upload_id: str) -> None:
        """Record that finalization gave up and deleted the upload's files."""
        with self._lock:
            upload = self._uploads.get(upload_id)
            if upload is not None:
                upload.status = UploadStatus.ABORTED
                upload.last_activity_at = self._clock()
        logger.warning(f"Upload removed after failed finalization: {upload_id}")

    def uploads(self) -> list[Upload]:
        with self._lock:
            return [_snapshot(upload) for upload in self._uploads.values()]

    def _append_lock(self, upload_id: str) -> threading.Lock:
        with self._lock:
            self._get_live(upload_id)
            return self._append_locks.setdefault(upload_id, threading.Lock())

    def _get_live(self, upload_id: str) -> Upload:
        # Caller holds self._lock
        upload = self._uploads.get(upload_id)
        if upload is None:
            raise NotFound(f"Upload not found: {upload_id}")
        if upload.status in (UploadStatus.ABORTED, UploadStatus.EXPIRED):
            raise Gone(f"Upload {upload_id} was {upload.status.value}")
        return upload

