"""Reconciliation of app-level and table-level config files."""

import logging
from pathlib import Path
from typing import Optional

from ..exceptions import (
    IncompleteRemoteBodyError,
    LocalFileError,
    ManifestDataError,
    MalformedManifestError,
    StateStoreError,
)
from ..models import ManifestDocument, ManifestEntry, Scope, ScopeKind, ScopeOutcome
from ..utils import compute_md5_hash, file_mtime
from .layout import AppLayout
from .progress import ProgressStep, StepProgress, resolve_reporter
from .protocols import (
    Hasher,
    ManifestSource,
    ProgressReporter,
    SyncStateStore,
    TablePropertiesCallback,
    TransferExecutor,
)

logger = logging.getLogger(__name__)


def hash_local_file(hasher: Hasher, local_file: Path) -> str:
    """Hash a local file, reporting read failures as LocalFileError."""
    try:
        return hasher(local_file)
    except OSError as e:
        raise LocalFileError(f"Cannot read {local_file}: {e}", str(local_file)) from e


class ScopeReconciler:
    """Computes and applies the minimal diff between local and remote config files.

    In push mode the device is authoritative: local files that differ from
    the manifest are uploaded and manifest entries without a local file are
    deleted on the server. In pull mode the server is authoritative: stale
    or missing local files are downloaded and local files absent from the
    manifest are deleted.

    The manifest ETag is stored only when the device and the server end up
    provably identical, so an incomplete pass is retried on the next sync.
    """

    def __init__(
        self,
        manifests: ManifestSource,
        transfers: TransferExecutor,
        state: SyncStateStore,
        layout: AppLayout,
        hasher: Hasher = compute_md5_hash,
    ):
        """Initialize the reconciler.

        Args:
            manifests: Source of server manifests
            transfers: Performs uploads, downloads and deletions
            state: Store for scope ETags and per-file hash tags
            layout: Application directory layout
            hasher: Content hash function for local files
        """
        self.manifests = manifests
        self.transfers = transfers
        self.state = state
        self.layout = layout
        self.hasher = hasher

    def reconcile(
        self,
        scope: Scope,
        push: bool,
        reporter: Optional[ProgressReporter] = None,
        on_table_properties_changed: Optional[TablePropertiesCallback] = None,
    ) -> ScopeOutcome:
        """Synchronize the files of an app-level or table-level scope.

        Args:
            scope: App or table scope; ``scope.last_etag`` is the stored ETag
            push: True to make the server match the device, False for the reverse
            reporter: Receives one progress event per unit of work
            on_table_properties_changed: Called with the table id when a pull
                changed the table's properties file

        Returns:
            ScopeOutcome describing what moved and whether both sides match

        Raises:
            ManifestDataError: If the server sent an incomplete or malformed entry
            LocalFileError: If a local file cannot be read
            TransportError: If any transfer fails
        """
        if scope.kind == ScopeKind.ROW:
            raise ValueError("Row attachments are reconciled by AttachmentReconciler")

        reporter = resolve_reporter(reporter)
        reporter.report(scope.kind, ProgressStep.GETTING_MANIFEST, (scope.describe(),), 1.0)

        manifest = self.manifests.fetch_manifest(scope)
        if manifest is None:
            logger.info(f"No change in manifest of {scope.describe()}, skipping")
            reporter.report(
                scope.kind, ProgressStep.GETTING_MANIFEST, (scope.describe(),), 100.0
            )
            return ScopeOutcome(scope=scope, manifest_changed=False)

        local_paths = self._enumerate_local_files(scope)
        logger.debug(
            f"{scope.describe()}: {len(local_paths)} local file(s), "
            f"{len(manifest.entries)} manifest entr(y/ies)"
        )

        try:
            if push:
                outcome = self._push(scope, manifest, local_paths, reporter)
            else:
                outcome = self._pull(
                    scope, manifest, local_paths, reporter, on_table_properties_changed
                )
        finally:
            self._flush_state()

        if outcome.entirely_match:
            self._store_scope_etag(scope, manifest.etag)
        else:
            logger.info(
                f"{scope.describe()} is not fully synchronized, keeping previous ETag"
            )
        return outcome

    def _enumerate_local_files(self, scope: Scope) -> list[str]:
        if scope.kind == ScopeKind.APP:
            return self.layout.get_app_level_files()
        return self.layout.get_table_level_files(scope.table_id or "")

    def _push(
        self,
        scope: Scope,
        manifest: ManifestDocument,
        local_paths: list[str],
        reporter: ProgressReporter,
    ) -> ScopeOutcome:
        """Upload differing local files, then delete server files missing locally."""
        outcome = ScopeOutcome(scope=scope)
        progress = StepProgress(len(local_paths) + len(manifest.entries))

        matched: set[str] = set()
        server_files_to_delete: list[ManifestEntry] = []
        for entry in manifest.entries:
            local_file = self.layout.as_app_file(entry.relative_path)
            if not local_file.is_file():
                server_files_to_delete.append(entry)
            elif hash_local_file(self.hasher, local_file) == entry.content_hash:
                matched.add(entry.relative_path)

        to_upload = [path for path in local_paths if path not in matched]
        progress.resize(len(to_upload) + len(server_files_to_delete))

        for relative_path in to_upload:
            reporter.report(
                scope.kind,
                ProgressStep.UPLOADING_LOCAL_FILE,
                (relative_path,),
                progress.current(),
            )
            logger.debug(f"Uploading {relative_path}")
            self.transfers.upload_file(
                self.layout.as_app_file(relative_path), relative_path
            )
            outcome.uploaded.append(relative_path)
            progress.advance()

        for entry in server_files_to_delete:
            reporter.report(
                scope.kind,
                ProgressStep.DELETING_FILE_ON_SERVER,
                (entry.relative_path,),
                progress.current(),
            )
            logger.debug(f"Deleting {entry.relative_path} on server")
            self.transfers.delete_file(entry.relative_path)
            outcome.deleted_remote.append(entry.relative_path)
            progress.advance()

        return outcome

    def _pull(
        self,
        scope: Scope,
        manifest: ManifestDocument,
        local_paths: list[str],
        reporter: ProgressReporter,
        on_table_properties_changed: Optional[TablePropertiesCallback],
    ) -> ScopeOutcome:
        """Download stale files, then delete local files absent from the manifest."""
        outcome = ScopeOutcome(scope=scope)
        progress = StepProgress(len(local_paths) + len(manifest.entries))

        local_set = set(local_paths)
        matched: set[str] = set()
        errors: list[ManifestDataError] = []
        properties_file = (
            self.layout.table_properties_file(scope.table_id)
            if scope.kind == ScopeKind.TABLE and scope.table_id
            else None
        )
        table_properties_changed = False

        for entry in manifest.entries:
            relative_path = entry.relative_path
            reporter.report(
                scope.kind,
                ProgressStep.VERIFYING_LOCAL_FILE,
                (relative_path,),
                progress.current(),
            )

            try:
                changed = self.download_if_stale(
                    entry, self.layout.as_app_file(relative_path), scope.table_id
                )
            except ManifestDataError as e:
                logger.error(f"Cannot synchronize {relative_path or '<unnamed>'}: {e}")
                errors.append(e)
            else:
                if changed:
                    outcome.downloaded.append(relative_path)
                if relative_path == properties_file:
                    table_properties_changed = changed

            matched.add(relative_path)
            unmatched_count = len(local_set - matched)
            progress.resize(unmatched_count + len(manifest.entries))
            progress.advance()

        if errors:
            for extra in errors[1:]:
                logger.debug(f"Additional manifest error: {extra}")
            raise errors[0]

        for relative_path in local_paths:
            if relative_path in matched:
                continue
            reporter.report(
                scope.kind,
                ProgressStep.DELETING_LOCAL_FILE,
                (relative_path,),
                progress.current(),
            )
            local_file = self.layout.as_app_file(relative_path)
            try:
                local_file.unlink()
                outcome.deleted_local.append(relative_path)
            except OSError as e:
                # Usually a file still held open; the next sync retries it.
                logger.error(f"Unable to delete {local_file}: {e}")
                outcome.failed_local_deletes.append(relative_path)
                outcome.entirely_match = False
            progress.advance()

        if table_properties_changed and on_table_properties_changed is not None:
            on_table_properties_changed(scope.table_id or "")

        return outcome

    def download_if_stale(
        self,
        entry: ManifestEntry,
        local_file: Path,
        table_id: Optional[str] = None,
    ) -> bool:
        """Make sure the local copy of a manifest entry is current.

        The per-file hash tag (keyed by locator and local modification time)
        is consulted before hashing the file, so unchanged files are not
        re-read on every sync.

        Args:
            entry: Manifest entry to verify
            local_file: Local path of the entry
            table_id: Table the entry belongs to (None for app-level files)

        Returns:
            True if the file was downloaded, False if it was already current

        Raises:
            IncompleteRemoteBodyError: If the entry is a server-side placeholder
            MalformedManifestError: If the entry has no file name or locator,
                or its path points outside of the application folder
            LocalFileError: If the local copy cannot be read
            TransportError: If the download fails
        """
        if entry.content_length == 0:
            raise IncompleteRemoteBodyError(
                f"Server is missing the body of {entry.relative_path}",
                entry.relative_path,
            )
        if not entry.relative_path:
            raise MalformedManifestError("Manifest entry does not have a file name")
        if not entry.download_url:
            raise MalformedManifestError(
                f"Manifest entry {entry.relative_path} has no download locator",
                entry.relative_path,
            )

        locator = entry.download_url
        local_file.parent.mkdir(parents=True, exist_ok=True)

        if not local_file.exists():
            logger.debug(f"Downloading new file {entry.relative_path}")
            self.transfers.download_file(local_file, locator)
            self._store_file_tag(locator, table_id, local_file, entry.content_hash)
            return True

        has_up_to_date_tag = True
        local_hash = self._load_file_tag(locator, table_id, local_file)
        if local_hash is None:
            has_up_to_date_tag = False
            local_hash = hash_local_file(self.hasher, local_file)

        if local_hash != entry.content_hash:
            logger.debug(f"Downloading changed file {entry.relative_path}")
            self.transfers.download_file(local_file, locator)
            self._store_file_tag(locator, table_id, local_file, entry.content_hash)
            return True

        if not has_up_to_date_tag:
            self._store_file_tag(locator, table_id, local_file, local_hash)
        return False

    def _load_file_tag(
        self, locator: str, table_id: Optional[str], local_file: Path
    ) -> Optional[str]:
        try:
            return self.state.get_file_tag(locator, table_id, file_mtime(local_file))
        except (StateStoreError, OSError) as e:
            logger.warning(f"Could not read file tag of {local_file} (ignoring): {e}")
            return None

    def _store_file_tag(
        self,
        locator: str,
        table_id: Optional[str],
        local_file: Path,
        content_hash: Optional[str],
    ) -> None:
        if not content_hash:
            return
        try:
            self.state.update_file_tag(
                locator, table_id, file_mtime(local_file), content_hash
            )
        except (StateStoreError, OSError) as e:
            logger.warning(f"Could not store file tag of {local_file} (ignoring): {e}")

    def _flush_state(self) -> None:
        try:
            self.state.flush()
        except StateStoreError as e:
            logger.warning(f"Could not save file tags (ignoring): {e}")

    def _store_scope_etag(self, scope: Scope, etag: Optional[str]) -> None:
        try:
            self.state.update_scope_etag(scope.kind, scope.table_id, etag)
        except StateStoreError as e:
            logger.error(f"Error while trying to update the manifest ETag: {e}")
