"""Upload record and lifecycle states."""

from dataclasses import asdict, dataclass, field
from enum import Enum


class UploadStatus(str, Enum):
    CREATED = "created"
    RECEIVING = "receiving"
    COMPLETED = "completed"
    ABORTED = "aborted"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (
            UploadStatus.COMPLETED,
            UploadStatus.ABORTED,
            UploadStatus.EXPIRED,
        )


@dataclass
class Upload:
    """One resumable transfer.

    ``offset`` only ever moves forward and never passes ``size``.
    """

    id: str
    size: int
    offset: int = 0
    metadata: dict[str, str] = field(default_factory=dict)
    status: UploadStatus = UploadStatus.CREATED
    created_at: float = 0.0
    last_activity_at: float = 0.0
    final_name: str | None = None

    @property
    def filename(self) -> str | None:
        """Original filename as sent by the client, if any."""
        return self.metadata.get("filename") or self.metadata.get("name")

    def to_record(self) -> dict:
        """Fields persisted in the sidecar metadata record."""
        return {
            "id": self.id,
            "size": self.size,
            "offset": self.offset,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "last_activity_at": self.last_activity_at,
        }

    @classmethod
    def from_record(cls, record: dict) -> "Upload":
        offset = int(record.get("offset", 0))
        return cls(
            id=str(record["id"]),
            size=int(record["size"]),
            offset=offset,
            metadata={str(k): str(v) for k, v in record.get("metadata", {}).items()},
            status=UploadStatus.RECEIVING if offset else UploadStatus.CREATED,
            created_at=float(record.get("created_at", 0.0)),
            last_activity_at=float(record.get("last_activity_at", 0.0)),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data
