"""Sync engine: per-scope entry points for app, table and row synchronization."""

import logging
import time
from typing import Optional

from ..exceptions import StateStoreError
from ..models import (
    AttachmentState,
    RowAttachments,
    Scope,
    ScopeKind,
    ScopeOutcome,
    SyncOutcome,
)
from ..utils import MAX_BATCH_SIZE, compute_md5_hash
from .attachments import AttachmentReconciler
from .layout import AppLayout
from .protocols import (
    Hasher,
    ManifestSource,
    ProgressReporter,
    SyncStateStore,
    TablePropertiesCallback,
    TransferExecutor,
)
from .reconciler import ScopeReconciler

logger = logging.getLogger(__name__)


class SyncEngine:
    """Orchestrates the reconciliation of one application's files.

    The engine looks up the stored ETag of a scope, runs the matching
    reconciler and returns its outcome. It holds no per-sync state, so a
    single instance can be reused for any number of scopes.

    Examples:
        >>> with SyncClient(server_url, "default") as client:
        ...     engine = SyncEngine(client, client, store, layout)
        ...     outcome = engine.sync_app_level_files(push=False)
        ...     print(outcome.entirely_match)
    """

    def __init__(
        self,
        manifests: ManifestSource,
        transfers: TransferExecutor,
        state: SyncStateStore,
        layout: AppLayout,
        hasher: Hasher = compute_md5_hash,
        batch_budget: int = MAX_BATCH_SIZE,
    ):
        """Initialize sync engine.

        Args:
            manifests: Source of server manifests
            transfers: Performs file and batch transfers
            state: Store for ETags and file tags
            layout: Application directory layout
            hasher: Content hash function for local files
            batch_budget: Maximum number of bytes per attachment batch
        """
        self.state = state
        self.layout = layout
        self.scope_reconciler = ScopeReconciler(
            manifests, transfers, state, layout, hasher=hasher
        )
        self.attachment_reconciler = AttachmentReconciler(
            manifests,
            transfers,
            state,
            layout,
            hasher=hasher,
            batch_budget=batch_budget,
        )

    def sync_app_level_files(
        self,
        push: bool,
        reporter: Optional[ProgressReporter] = None,
    ) -> ScopeOutcome:
        """Synchronize the application-wide config files.

        Args:
            push: True to push device files to the server, False to pull
            reporter: Optional progress reporter

        Returns:
            ScopeOutcome of the pass
        """
        scope = Scope.app(last_etag=self._stored_etag(ScopeKind.APP, None))
        return self._run_scope(scope, push, reporter, None)

    def sync_table_level_files(
        self,
        table_id: str,
        push: bool,
        reporter: Optional[ProgressReporter] = None,
        on_table_properties_changed: Optional[TablePropertiesCallback] = None,
    ) -> ScopeOutcome:
        """Synchronize the config files of one table.

        Args:
            table_id: Table identifier
            push: True to push device files to the server, False to pull
            reporter: Optional progress reporter
            on_table_properties_changed: Called when a pull changed the
                table's properties file

        Returns:
            ScopeOutcome of the pass
        """
        scope = Scope.table(
            table_id, last_etag=self._stored_etag(ScopeKind.TABLE, table_id)
        )
        return self._run_scope(scope, push, reporter, on_table_properties_changed)

    def sync_row_attachments(
        self,
        row: RowAttachments,
        attachment_state: AttachmentState,
        reporter: Optional[ProgressReporter] = None,
    ) -> SyncOutcome:
        """Synchronize the attachments of one row.

        Args:
            row: Row and the attachments it references
            attachment_state: Permitted transfer directions
            reporter: Optional progress reporter

        Returns:
            SyncOutcome; advance the row out of "pending files" iff
            ``outcome.fully_synced``
        """
        start = time.time()
        outcome = self.attachment_reconciler.reconcile(row, attachment_state, reporter)
        logger.debug(
            "Row %s attachments took %.2fs (uploads=%s, downloads=%s)",
            row.row_id,
            time.time() - start,
            outcome.uploads.value,
            outcome.downloads.value,
        )
        return outcome

    def _run_scope(
        self,
        scope: Scope,
        push: bool,
        reporter: Optional[ProgressReporter],
        on_table_properties_changed: Optional[TablePropertiesCallback],
    ) -> ScopeOutcome:
        start = time.time()
        logger.debug(f"Syncing {scope.describe()} ({'push' if push else 'pull'})")
        outcome = self.scope_reconciler.reconcile(
            scope,
            push,
            reporter=reporter,
            on_table_properties_changed=on_table_properties_changed,
        )
        logger.debug(
            "Sync of %s took %.2fs with %d transfer(s)",
            scope.describe(),
            time.time() - start,
            outcome.transfer_count,
        )
        return outcome

    def _stored_etag(self, kind: ScopeKind, table_id: Optional[str]) -> Optional[str]:
        try:
            return self.state.get_scope_etag(kind, table_id)
        except StateStoreError as e:
            logger.warning(f"Could not read stored ETag (ignoring): {e}")
            return None
