"""Local filesystem storage for partial uploads.

Layout under the storage root:
- ``<id>``: partial file, grows by appends
- ``<id>.json``: sidecar metadata record (size, committed offset, metadata)
- ``<name>--<id><ext>``: finalized file
"""

import json
import logging
import os
import re
import shutil
import tempfile
from typing import BinaryIO

from .errors import IncompleteChunk, StorageIO
from .models import Upload

logger = logging.getLogger(__name__)

METADATA_SUFFIX = ".json"

# Request bodies are copied to disk in pieces of this size
BUFFER_SIZE = 8 * 1024 * 1024

# Longest filename most filesystems accept
MAX_FILENAME_LENGTH = 255

PLACEHOLDER_NAME = "unnamed_file"

_HOSTILE_CHARS = re.compile(r'[/\\?%*:|"<>\x00-\x1f\x7f]')
_UPLOAD_ID = re.compile(r"^[0-9a-f]{32}$")


def sanitize_filename(filename: str | None) -> str:
    """Make a client-supplied filename safe to use as a rename target.

    Path separators, traversal sequences and characters most filesystems
    reject are replaced with ``-``. Long names are cut to MAX_FILENAME_LENGTH,
    keeping a short extension. Empty results fall back to PLACEHOLDER_NAME.
    """
    if not filename:
        return PLACEHOLDER_NAME
    name = _HOSTILE_CHARS.sub("-", filename)
    name = name.replace("..", "-").strip()
    if len(name) > MAX_FILENAME_LENGTH:
        base, ext = os.path.splitext(name)
        if len(ext) > 16:
            ext = ""
        name = base[: MAX_FILENAME_LENGTH - len(ext)] + ext
    return name or PLACEHOLDER_NAME


def build_final_name(filename: str | None, upload_id: str) -> str:
    """Build ``<base>--<id><ext>`` from the original filename.

    The base is shortened so the whole name stays within MAX_FILENAME_LENGTH.
    """
    safe = sanitize_filename(filename)
    base, ext = os.path.splitext(safe)
    suffix = f"--{upload_id}{ext}"
    base = base[: max(1, MAX_FILENAME_LENGTH - len(suffix))]
    return f"{base}{suffix}"


def is_upload_id(value: str) -> bool:
    return bool(_UPLOAD_ID.match(value))


class LocalUploadStore:
    """UploadStore backed by a directory on the local filesystem.

    Args:
        root: Storage root directory. Created by ensure_ready() if missing.
    """

    def __init__(self, root: str):
        self._root = os.path.abspath(root)

    @property
    def root(self) -> str:
        return self._root

    def partial_path(self, upload_id: str) -> str:
        if not is_upload_id(upload_id):
            raise ValueError(f"Invalid upload id: {upload_id!r}")
        return os.path.join(self._root, upload_id)

    def metadata_path(self, upload_id: str) -> str:
        return self.partial_path(upload_id) + METADATA_SUFFIX

    def ensure_ready(self) -> None:
        try:
            if os.path.isdir(self._root):
                logger.info(f"Upload directory exists: {self._root}")
            else:
                os.makedirs(self._root, exist_ok=True)
                logger.info(f"Created upload directory: {self._root}")

            # Test write permissions
            test_file = os.path.join(self._root, ".write-test")
            with open(test_file, "w") as f:
                f.write("test")
            os.remove(test_file)
        except OSError as e:
            logger.error(f"Upload directory is not writable: {self._root}: {e}")
            raise StorageIO(f"Upload directory is not writable: {self._root}") from e
        logger.info("Upload directory is writable")

    def create(self, upload: Upload) -> None:
        try:
            self._write_record(upload)
            with open(self.partial_path(upload.id), "xb"):
                pass
        except OSError as e:
            self.remove(upload.id)
            raise StorageIO(f"Failed to create upload {upload.id}: {e}") from e

    def write(
        self,
        upload_id: str,
        offset: int,
        data: bytes | BinaryIO,
        length: int | None = None,
    ) -> None:
        """Write a chunk at ``offset``.

        ``data`` is either the chunk bytes or a readable stream (a request
        body) from which exactly ``length`` bytes are copied.

        Raises:
            IncompleteChunk: If the stream ends or fails before ``length`` bytes.
            StorageIO: If the partial file cannot be written.
        """
        try:
            with open(self.partial_path(upload_id), "r+b") as f:
                f.truncate(offset)
                f.seek(offset)
                if isinstance(data, (bytes, bytearray, memoryview)):
                    f.write(data)
                else:
                    self._copy_stream(upload_id, data, f, length or 0)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StorageIO(f"Failed to write upload {upload_id}: {e}") from e

    @staticmethod
    def _copy_stream(upload_id: str, src: BinaryIO, dst: BinaryIO, length: int) -> None:
        remaining = length
        while remaining > 0:
            try:
                piece = src.read(min(BUFFER_SIZE, remaining))
            except OSError as e:
                raise IncompleteChunk(
                    f"Connection lost after {length - remaining} of {length} bytes"
                ) from e
            if not piece:
                raise IncompleteChunk(
                    f"Body ended after {length - remaining} of {length} bytes"
                    f" for {upload_id}"
                )
            dst.write(piece)
            remaining -= len(piece)

    def commit(self, upload: Upload) -> None:
        try:
            self._write_record(upload)
        except OSError as e:
            raise StorageIO(f"Failed to commit upload {upload.id}: {e}") from e

    def length(self, upload_id: str) -> int:
        try:
            return os.path.getsize(self.partial_path(upload_id))
        except OSError as e:
            raise StorageIO(f"Partial file missing for {upload_id}: {e}") from e

    def truncate(self, upload_id: str, length: int) -> None:
        """Cut the partial file back to ``length`` bytes."""
        try:
            with open(self.partial_path(upload_id), "r+b") as f:
                f.truncate(length)
        except OSError as e:
            raise StorageIO(f"Failed to truncate upload {upload_id}: {e}") from e

    def finalize(self, upload_id: str, new_name: str) -> str:
        if os.path.basename(new_name) != new_name or new_name in ("", ".", ".."):
            raise ValueError(f"Invalid final name: {new_name!r}")

        old_path = self.partial_path(upload_id)
        new_path = os.path.join(self._root, new_name)
        try:
            size = os.path.getsize(old_path)
            logger.info(f"Upload size: {size / 1024 / 1024:.2f}MB")
            os.replace(old_path, new_path)
        except OSError as e:
            raise StorageIO(f"Failed to finalize upload {upload_id}: {e}") from e

        self._unlink_quietly(self.metadata_path(upload_id))
        return new_path

    def remove(self, upload_id: str) -> None:
        self._unlink_quietly(self.partial_path(upload_id))
        self._unlink_quietly(self.metadata_path(upload_id))
        logger.info(f"Cleaned up upload: {upload_id}")

    def load_records(self) -> list[Upload]:
        uploads = []
        try:
            names = sorted(os.listdir(self._root))
        except OSError as e:
            raise StorageIO(f"Cannot list upload directory: {e}") from e

        for name in names:
            if not name.endswith(METADATA_SUFFIX):
                continue
            upload_id = name[: -len(METADATA_SUFFIX)]
            if not is_upload_id(upload_id):
                continue
            path = os.path.join(self._root, name)
            try:
                with open(path) as f:
                    uploads.append(Upload.from_record(json.load(f)))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable metadata record {name}: {e}")
        return uploads

    def exists(self, upload_id: str) -> bool:
        return os.path.isfile(self.partial_path(upload_id))

    def disk_usage(self) -> tuple[int, int, int]:
        usage = shutil.disk_usage(self._root)
        return usage.total, usage.used, usage.free

    def _write_record(self, upload: Upload) -> None:
        # Write to a temp file in the same directory, then rename over the
        # record so readers never see a half-written sidecar.
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{upload.id}.", suffix=".tmp", dir=self._root
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(upload.to_record(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.metadata_path(upload.id))
        except BaseException:
            self._unlink_quietly(tmp_path)
            raise

    @staticmethod
    def _unlink_quietly(path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")
