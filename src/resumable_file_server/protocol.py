"""UploadStore protocol definition."""

from typing import BinaryIO, Protocol, runtime_checkable

from .models import Upload


@runtime_checkable
class UploadStore(Protocol):
    """Protocol for storage backends holding partial uploads.

    A backend keeps one partial file and one metadata record per upload id.
    The upload manager validates offsets before calling into it, so a backend
    never has to reason about concurrent or out-of-order writes.
    """

    def ensure_ready(self) -> None:
        """Prepare the storage root and verify it is writable.

        Raises:
            StorageIO: If the root cannot be created or written.
        """
        ...

    def create(self, upload: Upload) -> None:
        """Create the metadata record and an empty partial file."""
        ...

    def write(
        self,
        upload_id: str,
        offset: int,
        data: bytes | BinaryIO,
        length: int | None = None,
    ) -> None:
        """Append ``data`` (bytes, or ``length`` bytes of a stream) at ``offset``.

        Bytes past ``offset`` left by an interrupted earlier write are
        discarded first. The data is durable when this returns.
        """
        ...

    def commit(self, upload: Upload) -> None:
        """Persist the upload's committed offset and activity time."""
        ...

    def length(self, upload_id: str) -> int:
        """Return the current length of the partial file."""
        ...

    def truncate(self, upload_id: str, length: int) -> None:
        """Cut the partial file back to ``length`` bytes (recovery)."""
        ...

    def exists(self, upload_id: str) -> bool:
        """Check whether the partial file is present."""
        ...

    def finalize(self, upload_id: str, new_name: str) -> str:
        """Atomically rename the partial file to ``new_name``.

        The metadata record is removed afterwards.

        Returns:
            The public path of the finalized file.
        """
        ...

    def remove(self, upload_id: str) -> None:
        """Delete the partial file and metadata record, if present."""
        ...

    def load_records(self) -> list[Upload]:
        """Load every persisted in-flight upload (restart recovery)."""
        ...

    def disk_usage(self) -> tuple[int, int, int]:
        """Return ``(total, used, free)`` bytes of the storage root."""
        ...
