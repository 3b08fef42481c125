"""Error types raised by the upload engine.

Each error carries the HTTP status the protocol handler answers with, so the
handler can render any of them uniformly.
"""


class UploadError(Exception):
    """Base class for all upload errors."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def details(self) -> dict:
        """Extra fields included in the JSON error body."""
        return {}

    def to_dict(self) -> dict:
        return {"error": self.message, **self.details()}


class BadRequest(UploadError):
    """Malformed or missing protocol headers."""

    status_code = 400


class InvalidSize(UploadError):
    """Declared upload length is missing, non-positive or over the limit."""

    status_code = 412


class ExtensionNotAllowed(UploadError):
    status_code = 415


class InsufficientStorage(UploadError):
    status_code = 507


class NotFound(UploadError):
    status_code = 404


class Gone(NotFound):
    """The upload existed but was aborted or expired."""

    status_code = 410


class OffsetMismatch(UploadError):
    """Chunk offset does not match the committed offset.

    Args:
        offset: The server's committed offset, for the client to resume from.
        requested: The offset the client declared.
    """

    status_code = 409

    def __init__(self, offset: int, requested: int):
        self.offset = offset
        self.requested = requested
        self.direction = "ahead" if requested > offset else "behind"
        super().__init__(
            f"Offset mismatch: expected {offset}, got {requested}"
        )

    def details(self) -> dict:
        return {"offset": self.offset, "direction": self.direction}


class IncompleteChunk(UploadError):
    """The request body ended before the declared Content-Length."""

    status_code = 400


class SizeExceeded(UploadError):
    status_code = 413

    def __init__(self, size: int, end: int):
        self.size = size
        self.end = end
        super().__init__(f"Chunk ends at {end}, beyond upload size {size}")

    def details(self) -> dict:
        return {"size": self.size}


class Conflict(UploadError):
    """Another append for the same upload is in flight."""

    status_code = 423


class StorageIO(UploadError):
    """Underlying read/write/rename failure. Retryable by the client."""

    status_code = 500


class RateLimited(UploadError):
    status_code = 429

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__("Too many uploads created, try again later")

    def details(self) -> dict:
        return {"retryAfter": self.retry_after}
