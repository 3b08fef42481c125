"""tus 1.0.0 header helpers."""

import base64
import binascii
from email.utils import formatdate

from .errors import BadRequest

TUS_VERSION = "1.0.0"
TUS_EXTENSIONS = "creation,termination,expiration"

OFFSET_CONTENT_TYPE = "application/offset+octet-stream"

REQUEST_HEADERS = (
    "Authorization",
    "Content-Type",
    "Location",
    "Tus-Resumable",
    "Upload-Length",
    "Upload-Metadata",
    "Upload-Offset",
    "X-HTTP-Method-Override",
    "X-Requested-With",
)

EXPOSED_HEADERS = (
    "Location",
    "Tus-Extension",
    "Tus-Max-Size",
    "Tus-Resumable",
    "Tus-Version",
    "Upload-Expires",
    "Upload-Length",
    "Upload-Metadata",
    "Upload-Offset",
    "Upload-Status",
    "X-Upload-Chunk-Size",
)

METHODS = ("POST", "PATCH", "HEAD", "DELETE", "OPTIONS", "GET")


def parse_metadata(header: str | None) -> dict[str, str]:
    """Decode an ``Upload-Metadata`` header.

    The header is a comma-separated list of ``key base64value`` pairs; the
    value may be omitted.

    Raises:
        BadRequest: On duplicate keys or values that are not base64 UTF-8.
    """
    metadata: dict[str, str] = {}
    if not header or not header.strip():
        return metadata

    for pair in header.split(","):
        parts = pair.strip().split(" ")
        key = parts[0]
        if not key or len(parts) > 2:
            raise BadRequest(f"Malformed Upload-Metadata pair: {pair.strip()!r}")
        if key in metadata:
            raise BadRequest(f"Duplicate Upload-Metadata key: {key!r}")

        if len(parts) == 1:
            metadata[key] = ""
            continue
        try:
            metadata[key] = base64.b64decode(parts[1], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise BadRequest(f"Upload-Metadata value for {key!r} is not base64") from e

    return metadata


def encode_metadata(metadata: dict[str, str]) -> str:
    pairs = []
    for key, value in metadata.items():
        if value:
            encoded = base64.b64encode(value.encode("utf-8")).decode("ascii")
            pairs.append(f"{key} {encoded}")
        else:
            pairs.append(key)
    return ",".join(pairs)


def parse_offset(value: str | None, header: str = "Upload-Offset") -> int:
    """Parse a non-negative integer header value."""
    if value is None:
        raise BadRequest(f"{header} header is required")
    value = value.strip()
    if not (value.isascii() and value.isdigit()):
        raise BadRequest(f"{header} must be a non-negative integer")
    return int(value)


def http_date(timestamp: float) -> str:
    """Format a timestamp as an RFC 7231 date for ``Upload-Expires``."""
    return formatdate(timestamp, usegmt=True)
