"""manifestsync - Manifest-based file reconciliation with a sync server."""

from .api import SyncClient
from .exceptions import (
    AuthenticationError,
    ConfigError,
    DownloadError,
    IncompleteRemoteBodyError,
    InvalidResponseError,
    LocalFileError,
    MalformedManifestError,
    ManifestDataError,
    ManifestSyncError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    StateStoreError,
    TransportError,
    UploadError,
)
from .models import (
    AttachmentState,
    DirectionStatus,
    ManifestDocument,
    ManifestEntry,
    RowAttachments,
    Scope,
    ScopeKind,
    ScopeOutcome,
    SyncOutcome,
    TransferItem,
)
from .utils import MAX_BATCH_SIZE, compute_md5_hash

__all__ = [
    "SyncClient",
    "ManifestSyncError",
    "ConfigError",
    "LocalFileError",
    "StateStoreError",
    "ManifestDataError",
    "IncompleteRemoteBodyError",
    "MalformedManifestError",
    "TransportError",
    "NetworkError",
    "AuthenticationError",
    "PermissionDeniedError",
    "NotFoundError",
    "RateLimitError",
    "InvalidResponseError",
    "UploadError",
    "DownloadError",
    "AttachmentState",
    "DirectionStatus",
    "ManifestDocument",
    "ManifestEntry",
    "RowAttachments",
    "Scope",
    "ScopeKind",
    "ScopeOutcome",
    "SyncOutcome",
    "TransferItem",
    "MAX_BATCH_SIZE",
    "compute_md5_hash",
]
