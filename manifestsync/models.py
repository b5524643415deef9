"""Data models for manifests, transfers and sync outcomes."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .exceptions import InvalidResponseError
from .utils import compute_fingerprint


class ScopeKind(str, Enum):
    """Granularity of a reconciliation pass."""

    APP = "app"
    """Application-wide config files"""

    TABLE = "table"
    """Config files of a single table"""

    ROW = "row"
    """Binary attachments of a single row"""


class AttachmentState(str, Enum):
    """Which transfer directions are permitted for row attachments."""

    NONE = "none"
    """Do not touch attachments at all"""

    UPLOAD = "upload"
    """Only push local attachments to the server"""

    DOWNLOAD = "download"
    """Only pull attachments from the server"""

    SYNC = "sync"
    """Push and pull"""

    @property
    def allows_upload(self) -> bool:
        """Whether attachments may be uploaded in this state."""
        return self in (AttachmentState.UPLOAD, AttachmentState.SYNC)

    @property
    def allows_download(self) -> bool:
        """Whether attachments may be downloaded in this state."""
        return self in (AttachmentState.DOWNLOAD, AttachmentState.SYNC)


class DirectionStatus(str, Enum):
    """Result of one transfer direction of a row attachment sync."""

    COMPLETE = "complete"
    """Everything that had to move in this direction has moved"""

    SKIPPED = "skipped"
    """The attachment state does not request this direction"""

    PENDING = "pending"
    """Nothing was checked; the row stays pending"""

    IMPOSSIBLE = "impossible"
    """A referenced file exists neither locally nor on the server"""

    @property
    def is_satisfied(self) -> bool:
        return self in (DirectionStatus.COMPLETE, DirectionStatus.SKIPPED)


@dataclass
class ManifestEntry:
    """One remote file known to the server within a scope."""

    relative_path: str
    """App-relative path (forward slashes)"""

    content_hash: Optional[str]
    """Server content hash; None when the server has no file body"""

    content_length: int
    """Size of the file body in bytes"""

    download_url: Optional[str] = None
    """Locator used to fetch the file body"""

    content_type: Optional[str] = None
    """MIME type reported by the server"""

    @property
    def has_body(self) -> bool:
        """Whether the server reports a content hash for this entry."""
        return bool(self.content_hash)

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "ManifestEntry":
        """Create a ManifestEntry from a server manifest entry.

        Args:
            data: Entry dictionary with ``filename``, ``md5hash``,
                ``contentLength``, ``downloadUrl`` and ``contentType`` keys

        Returns:
            ManifestEntry instance
        """
        content_length = data.get("contentLength")
        return cls(
            relative_path=data.get("filename") or "",
            content_hash=data.get("md5hash") or None,
            content_length=int(content_length) if content_length is not None else 0,
            download_url=data.get("downloadUrl") or None,
            content_type=data.get("contentType"),
        )


@dataclass
class ManifestDocument:
    """Server-reported manifest of a scope together with its ETag."""

    etag: Optional[str]
    entries: list[ManifestEntry] = field(default_factory=list)

    @classmethod
    def from_api_response(
        cls, data: Any, etag: Optional[str] = None
    ) -> "ManifestDocument":
        """Create a ManifestDocument from a manifest response body.

        Args:
            data: Parsed JSON body, ``{"files": [...]}``
            etag: Value of the response ETag header

        Returns:
            ManifestDocument instance

        Raises:
            InvalidResponseError: If the body is not a manifest
        """
        if not isinstance(data, dict) or not isinstance(data.get("files", []), list):
            raise InvalidResponseError(f"Unexpected manifest response: {data!r}")
        entries = [ManifestEntry.from_api_response(e) for e in data.get("files", [])]
        return cls(etag=etag, entries=entries)


@dataclass
class Scope:
    """Identifies what a manifest fetch is about."""

    kind: ScopeKind
    table_id: Optional[str] = None
    row_id: Optional[str] = None
    last_etag: Optional[str] = None
    """ETag stored after the last fully matched sync of this scope"""

    attachment_state: Optional[AttachmentState] = None
    fingerprint: Optional[str] = None

    @classmethod
    def app(cls, last_etag: Optional[str] = None) -> "Scope":
        return cls(kind=ScopeKind.APP, last_etag=last_etag)

    @classmethod
    def table(cls, table_id: str, last_etag: Optional[str] = None) -> "Scope":
        return cls(kind=ScopeKind.TABLE, table_id=table_id, last_etag=last_etag)

    @classmethod
    def row(
        cls,
        table_id: str,
        row_id: str,
        attachment_state: AttachmentState,
        fingerprint: str,
        last_etag: Optional[str] = None,
    ) -> "Scope":
        return cls(
            kind=ScopeKind.ROW,
            table_id=table_id,
            row_id=row_id,
            last_etag=last_etag,
            attachment_state=attachment_state,
            fingerprint=fingerprint,
        )

    def describe(self) -> str:
        """Short human-readable label, e.g. ``table 'geotagger'``."""
        if self.kind == ScopeKind.APP:
            return "app-level files"
        if self.kind == ScopeKind.TABLE:
            return f"table '{self.table_id}'"
        return f"row '{self.row_id}' of table '{self.table_id}'"


@dataclass
class TransferItem:
    """A single file queued for upload or download."""

    local_path: Path
    remote_locator: str
    byte_size: int
    relative_path: str = ""
    """Path relative to the row's instance folder"""


@dataclass
class Batch:
    """Ordered, non-empty group of transfer items sent as one request."""

    items: list[TransferItem] = field(default_factory=list)

    @property
    def size(self) -> int:
        """Total number of bytes in the batch."""
        return sum(item.byte_size for item in self.items)

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class RowAttachments:
    """A row together with the attachments its current version references."""

    table_id: str
    row_id: str
    attachment_refs: list[str]
    fingerprint: str = ""

    def __post_init__(self) -> None:
        if not self.fingerprint:
            self.fingerprint = compute_fingerprint(self.attachment_refs)


@dataclass
class SyncOutcome:
    """Per-direction result of a row attachment sync."""

    uploads: DirectionStatus
    downloads: DirectionStatus

    @property
    def fully_synced_uploads(self) -> bool:
        return self.uploads.is_satisfied

    @property
    def fully_synced_downloads(self) -> bool:
        return self.downloads.is_satisfied

    @property
    def fully_synced(self) -> bool:
        """Whether the row may leave the "pending files" state."""
        return self.fully_synced_uploads and self.fully_synced_downloads

    @classmethod
    def pending(cls) -> "SyncOutcome":
        return cls(uploads=DirectionStatus.PENDING, downloads=DirectionStatus.PENDING)


@dataclass
class ScopeOutcome:
    """Result of an app-level or table-level reconciliation."""

    scope: Scope
    manifest_changed: bool = True
    """False when the server reported no change since the stored ETag"""

    entirely_match: bool = True
    """True when local and remote file sets are provably identical"""

    uploaded: list[str] = field(default_factory=list)
    downloaded: list[str] = field(default_factory=list)
    deleted_remote: list[str] = field(default_factory=list)
    deleted_local: list[str] = field(default_factory=list)
    failed_local_deletes: list[str] = field(default_factory=list)

    @property
    def transfer_count(self) -> int:
        """Number of files that moved or were deleted."""
        return (
            len(self.uploaded)
            + len(self.downloaded)
            + len(self.deleted_remote)
            + len(self.deleted_local)
        )
