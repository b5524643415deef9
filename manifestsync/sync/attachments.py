"""Reconciliation of row-level file attachments."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..exceptions import StateStoreError
from ..models import (
    AttachmentState,
    Batch,
    DirectionStatus,
    ManifestDocument,
    RowAttachments,
    Scope,
    ScopeKind,
    SyncOutcome,
    TransferItem,
)
from ..utils import MAX_BATCH_SIZE, compute_md5_hash
from .batching import plan_batches
from .layout import AppLayout
from .progress import ProgressStep, StepProgress, resolve_reporter
from .protocols import (
    Hasher,
    ManifestSource,
    ProgressReporter,
    SyncStateStore,
    TransferExecutor,
)
from .reconciler import hash_local_file

logger = logging.getLogger(__name__)


@dataclass
class AttachmentPlan:
    """Transfers needed to bring one row's attachments in sync."""

    to_upload: list[TransferItem] = field(default_factory=list)
    to_download: list[TransferItem] = field(default_factory=list)
    missing_everywhere: list[str] = field(default_factory=list)
    """References whose file exists neither locally nor on the server"""

    @property
    def impossible_to_complete_downloads(self) -> bool:
        return bool(self.missing_everywhere)


class AttachmentReconciler:
    """Synchronizes the attachments referenced by a single row.

    Only attachments referenced by the current version of the row are
    considered; other files the server knows for the row are ignored. The
    attachment state decides which directions are acted upon.
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
        """Initialize the reconciler.

        Args:
            manifests: Source of row-level manifests
            transfers: Performs batch uploads and downloads
            state: Store for row manifest tags
            layout: Application directory layout
            hasher: Content hash function for local files
            batch_budget: Maximum number of bytes per batch request
        """
        self.manifests = manifests
        self.transfers = transfers
        self.state = state
        self.layout = layout
        self.hasher = hasher
        self.batch_budget = batch_budget

    def reconcile(
        self,
        row: RowAttachments,
        state: AttachmentState,
        reporter: Optional[ProgressReporter] = None,
    ) -> SyncOutcome:
        """Synchronize the attachments of a row.

        Args:
            row: Row with the attachment references of its current version
            state: Permitted transfer directions
            reporter: Receives one progress event per batch

        Returns:
            SyncOutcome; the row may leave "pending files" iff
            ``outcome.fully_synced``

        Raises:
            ValueError: If the row references no attachments
            MalformedManifestError: If a reference points outside of the
                row's instance folder
            LocalFileError: If a local attachment cannot be read
            TransportError: If a batch transfer fails
        """
        if not row.attachment_refs:
            raise ValueError(f"Row {row.row_id} does not reference any attachment")

        if state == AttachmentState.NONE:
            return SyncOutcome.pending()

        reporter = resolve_reporter(reporter)
        logger.info(f"Requesting row-level manifest for {row.row_id}")

        last_etag = self._load_row_manifest_tag(row, state)
        scope = Scope.row(row.table_id, row.row_id, state, row.fingerprint, last_etag)
        manifest = self.manifests.fetch_manifest(scope)
        if manifest is None:
            # Unchanged manifest and references: the row keeps its previous
            # outcome, which was pending.
            logger.info(f"No change in row-level manifest for {row.row_id}")
            return SyncOutcome.pending()

        plan = self.plan(row, manifest)

        uploads = self._run_uploads(row, state, plan, reporter)
        downloads = self._run_downloads(row, state, plan, reporter)
        outcome = SyncOutcome(uploads=uploads, downloads=downloads)

        if outcome.fully_synced:
            self._store_row_manifest_tag(row, state, manifest.etag)
            logger.info(f"Attachments of {row.row_id} are synchronized")
        else:
            logger.info(
                f"Attachments of {row.row_id} are pending "
                f"(uploads: {uploads.value}, downloads: {downloads.value})"
            )
        return outcome

    def plan(self, row: RowAttachments, manifest: ManifestDocument) -> AttachmentPlan:
        """Partition the row's references into uploads and downloads.

        Args:
            row: Row with its attachment references
            manifest: Row-level manifest from the server

        Returns:
            AttachmentPlan with the queued transfers
        """
        plan = AttachmentPlan()
        references = list(dict.fromkeys(row.attachment_refs))
        referenced = set(references)
        matched: set[str] = set()

        for entry in manifest.entries:
            ref = entry.relative_path
            if ref not in referenced or ref in matched:
                continue
            matched.add(ref)

            local_file = self.layout.as_attachment_file(row.table_id, row.row_id, ref)
            if not entry.has_body:
                if local_file.exists():
                    logger.debug(f"Server has an entry but no file for {ref}, uploading")
                    plan.to_upload.append(
                        TransferItem(local_file, ref, local_file.stat().st_size, ref)
                    )
                else:
                    logger.warning(f"{ref} of {row.row_id} is missing everywhere")
                    plan.missing_everywhere.append(ref)
                continue

            item = TransferItem(
                local_file, entry.download_url or ref, entry.content_length, ref
            )
            if not local_file.exists():
                logger.debug(f"{ref} missing locally, downloading")
                plan.to_download.append(item)
            elif hash_local_file(self.hasher, local_file) != entry.content_hash:
                logger.debug(f"{ref} differs from the server copy, downloading")
                plan.to_download.append(item)

        for ref in references:
            if ref in matched:
                continue
            local_file = self.layout.as_attachment_file(row.table_id, row.row_id, ref)
            if local_file.exists():
                logger.debug(f"Server does not know {ref}, uploading")
                plan.to_upload.append(
                    TransferItem(local_file, ref, local_file.stat().st_size, ref)
                )
            else:
                logger.warning(f"{ref} of {row.row_id} is missing everywhere")
                plan.missing_everywhere.append(ref)

        return plan

    def _run_uploads(
        self,
        row: RowAttachments,
        state: AttachmentState,
        plan: AttachmentPlan,
        reporter: ProgressReporter,
    ) -> DirectionStatus:
        if not state.allows_upload:
            return DirectionStatus.SKIPPED
        if not plan.to_upload:
            logger.debug(f"No attachments of {row.row_id} to send to the server")
            return DirectionStatus.COMPLETE

        batches = plan_batches(plan.to_upload, self.batch_budget)
        self._transfer_batches(
            row, batches, ProgressStep.UPLOADING_ATTACHMENTS, reporter, upload=True
        )
        return DirectionStatus.COMPLETE

    def _run_downloads(
        self,
        row: RowAttachments,
        state: AttachmentState,
        plan: AttachmentPlan,
        reporter: ProgressReporter,
    ) -> DirectionStatus:
        if not state.allows_download:
            return DirectionStatus.SKIPPED

        if plan.to_download:
            batches = plan_batches(plan.to_download, self.batch_budget)
            self._transfer_batches(
                row, batches, ProgressStep.DOWNLOADING_ATTACHMENTS, reporter, upload=False
            )
        else:
            logger.debug(f"No attachments of {row.row_id} to fetch from the server")

        if plan.impossible_to_complete_downloads:
            return DirectionStatus.IMPOSSIBLE
        return DirectionStatus.COMPLETE

    def _transfer_batches(
        self,
        row: RowAttachments,
        batches: list[Batch],
        step: ProgressStep,
        reporter: ProgressReporter,
        upload: bool,
    ) -> None:
        progress = StepProgress(len(batches))
        for batch in batches:
            reporter.report(
                ScopeKind.ROW, step, (len(batch), row.row_id), progress.current()
            )
            if upload:
                self.transfers.upload_batch(batch.items, row)
            else:
                for item in batch.items:
                    item.local_path.parent.mkdir(parents=True, exist_ok=True)
                self.transfers.download_batch(batch.items, row)
            progress.advance()

    def _load_row_manifest_tag(
        self, row: RowAttachments, state: AttachmentState
    ) -> Optional[str]:
        try:
            return self.state.get_row_manifest_tag(
                row.table_id, row.row_id, state, row.fingerprint
            )
        except StateStoreError as e:
            logger.warning(f"Could not read manifest tag of {row.row_id} (ignoring): {e}")
            return None

    def _store_row_manifest_tag(
        self, row: RowAttachments, state: AttachmentState, etag: Optional[str]
    ) -> None:
        # The fingerprint tracks which attachments the row references, not
        # whether they exist, so it is still valid after the transfers.
        try:
            self.state.update_row_manifest_tag(
                row.table_id, row.row_id, state, row.fingerprint, etag
            )
        except StateStoreError as e:
            logger.error(f"Error while trying to update the row manifest tag: {e}")
