"""Protocols for the collaborators of the reconciliation engine.

The engine never talks to the network, the state database or the UI
directly. It only needs objects that satisfy these protocols;
``manifestsync.api.SyncClient`` and
``manifestsync.sync.state.JsonSyncStateStore`` are the bundled
implementations.
"""

from pathlib import Path
from typing import Callable, Optional, Protocol

from ..models import (
    AttachmentState,
    ManifestDocument,
    RowAttachments,
    Scope,
    ScopeKind,
    TransferItem,
)
from .progress import ProgressStep

Hasher = Callable[[Path], str]
"""Computes the content hash of a local file (same format as the server)."""

TablePropertiesCallback = Callable[[str], None]
"""Called with a table id when the table's properties file changed."""


class ManifestSource(Protocol):
    """Fetches server manifests."""

    def fetch_manifest(self, scope: Scope) -> Optional[ManifestDocument]:
        """Fetch the manifest of a scope.

        Returns None when the server state is identical to the one
        identified by ``scope.last_etag``.
        """
        ...


class TransferExecutor(Protocol):
    """Moves file bodies between the device and the server."""

    def upload_file(self, local_path: Path, relative_path: str) -> None: ...

    def delete_file(self, relative_path: str) -> None: ...

    def download_file(self, local_path: Path, download_url: str) -> None: ...

    def upload_batch(self, items: list[TransferItem], row: RowAttachments) -> None: ...

    def download_batch(
        self, items: list[TransferItem], row: RowAttachments
    ) -> None: ...


class SyncStateStore(Protocol):
    """Persists ETags and the per-file hash cache between sync runs."""

    def get_scope_etag(
        self, kind: ScopeKind, table_id: Optional[str] = None
    ) -> Optional[str]: ...

    def update_scope_etag(
        self, kind: ScopeKind, table_id: Optional[str], etag: Optional[str]
    ) -> None: ...

    def get_row_manifest_tag(
        self,
        table_id: str,
        row_id: str,
        state: AttachmentState,
        fingerprint: str,
    ) -> Optional[str]: ...

    def update_row_manifest_tag(
        self,
        table_id: str,
        row_id: str,
        state: AttachmentState,
        fingerprint: str,
        etag: Optional[str],
    ) -> None: ...

    def get_file_tag(
        self, locator: str, table_id: Optional[str], mtime: int
    ) -> Optional[str]: ...

    def update_file_tag(
        self, locator: str, table_id: Optional[str], mtime: int, content_hash: str
    ) -> None: ...

    def flush(self) -> None: ...


class ProgressReporter(Protocol):
    """Receives one callback per unit of work."""

    def report(
        self,
        kind: ScopeKind,
        step: ProgressStep,
        context: tuple,
        percent: float,
    ) -> None: ...
