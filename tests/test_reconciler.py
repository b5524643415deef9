"""Tests for app-level and table-level reconciliation."""

import os
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from conftest import md5_of, write_file
from manifestsync.exceptions import (
    IncompleteRemoteBodyError,
    LocalFileError,
    MalformedManifestError,
    StateStoreError,
    UploadError,
)
from manifestsync.models import ManifestDocument, ManifestEntry, Scope, ScopeKind
from manifestsync.sync import JsonSyncStateStore
from manifestsync.sync.progress import CallbackProgressReporter, ProgressStep
from manifestsync.sync.reconciler import ScopeReconciler
from manifestsync.utils import compute_md5_hash


@pytest.fixture
def reconciler(server, store, layout):
    """Create a reconciler wired to the in-memory server."""
    return ScopeReconciler(server, server, store, layout)


class TestPushMode:
    """Tests for push mode, where the device is authoritative."""

    def test_uploads_only_unmatched_files(self, reconciler, server, store, layout):
        """Test that only files whose hash differs are uploaded."""
        write_file(layout.app_dir, "config/a.txt", b"aaa")
        write_file(layout.app_dir, "config/b.txt", b"bbb")
        server.files["config/a.txt"] = b"aaa"

        outcome = reconciler.reconcile(Scope.app(), push=True)

        assert outcome.uploaded == ["config/b.txt"]
        assert outcome.deleted_remote == []
        assert outcome.entirely_match
        assert server.files["config/b.txt"] == b"bbb"
        assert store.get_scope_etag(ScopeKind.APP) is not None

    def test_changed_file_is_uploaded(self, reconciler, server, layout):
        """Test that a local file with different content replaces the server copy."""
        write_file(layout.app_dir, "config/a.txt", b"new")
        server.files["config/a.txt"] = b"old"

        outcome = reconciler.reconcile(Scope.app(), push=True)

        assert outcome.uploaded == ["config/a.txt"]
        assert server.files["config/a.txt"] == b"new"

    def test_deletes_server_files_missing_locally(self, reconciler, server):
        """Test that manifest entries without a local file are deleted remotely."""
        server.files["config/old.txt"] = b"old"

        outcome = reconciler.reconcile(Scope.app(), push=True)

        assert outcome.uploaded == []
        assert outcome.deleted_remote == ["config/old.txt"]
        assert server.calls == [("delete", "config/old.txt")]
        assert "config/old.txt" not in server.files

    def test_uploads_happen_before_deletes(self, reconciler, server, layout):
        """Test that all uploads are issued before any deletion."""
        write_file(layout.app_dir, "config/new.txt", b"new")
        server.files["config/old.txt"] = b"old"

        reconciler.reconcile(Scope.app(), push=True)

        assert server.calls == [("upload", "config/new.txt"), ("delete", "config/old.txt")]

    def test_excluded_areas_are_not_pushed_at_app_level(
        self, reconciler, server, layout
    ):
        """Test that table folders, csv assets and tables.init stay out of app scope."""
        write_file(layout.app_dir, "config/assets/app.css", b"body {}")
        write_file(layout.app_dir, "config/assets/tables.init", b"init")
        write_file(layout.app_dir, "config/assets/csv/trees.csv", b"a,b")
        write_file(layout.app_dir, "config/tables/trees/definition.csv", b"x")

        outcome = reconciler.reconcile(Scope.app(), push=True)

        assert outcome.uploaded == ["config/assets/app.css"]

    def test_table_scope_pushes_table_files_and_csv_assets(
        self, reconciler, server, layout
    ):
        """Test that a table push covers its folder and its csv assets only."""
        write_file(layout.app_dir, "config/tables/trees/definition.csv", b"def")
        write_file(layout.app_dir, "config/assets/csv/trees.csv", b"a,b")
        write_file(layout.app_dir, "config/assets/csv/birds.csv", b"c,d")

        outcome = reconciler.reconcile(Scope.table("trees"), push=True)

        assert outcome.uploaded == [
            "config/tables/trees/definition.csv",
            "config/assets/csv/trees.csv",
        ]

    def test_unreadable_local_file_raises_local_file_error(self, server, store, layout):
        """Test that a read failure while hashing surfaces as LocalFileError."""
        write_file(layout.app_dir, "config/a.txt", b"aaa")
        server.files["config/a.txt"] = b"old"

        def unreadable(path):
            raise PermissionError(13, "Permission denied", str(path))

        reconciler = ScopeReconciler(server, server, store, layout, hasher=unreadable)

        with pytest.raises(LocalFileError, match="Cannot read"):
            reconciler.reconcile(Scope.app(), push=True)

        assert server.calls == []

    def test_transport_error_propagates_and_keeps_etag(
        self, reconciler, server, store, layout
    ):
        """Test that a failed upload aborts the scope without storing the ETag."""
        write_file(layout.app_dir, "config/a.txt", b"aaa")
        server.upload_file = Mock(side_effect=UploadError("server rejected file"))

        with pytest.raises(UploadError):
            reconciler.reconcile(Scope.app(), push=True)

        assert store.get_scope_etag(ScopeKind.APP) is None


class TestPullMode:
    """Tests for pull mode, where the server is authoritative."""

    def test_downloads_missing_and_stale_files(self, reconciler, server, store, layout):
        """Test that missing and stale files are downloaded and extras deleted."""
        write_file(layout.app_dir, "config/a.txt", b"stale")
        write_file(layout.app_dir, "config/c.txt", b"extra")
        server.files["config/a.txt"] = b"fresh"
        server.files["config/b.txt"] = b"bbb"

        outcome = reconciler.reconcile(Scope.app(), push=False)

        assert outcome.downloaded == ["config/a.txt", "config/b.txt"]
        assert outcome.deleted_local == ["config/c.txt"]
        assert outcome.entirely_match
        assert (layout.app_dir / "config/a.txt").read_bytes() == b"fresh"
        assert (layout.app_dir / "config/b.txt").read_bytes() == b"bbb"
        assert not (layout.app_dir / "config/c.txt").exists()
        assert store.get_scope_etag(ScopeKind.APP) is not None

    def test_matching_file_is_not_downloaded(self, reconciler, server, layout):
        """Test that a local file with the manifest hash is left alone."""
        write_file(layout.app_dir, "config/a.txt", b"same")
        server.files["config/a.txt"] = b"same"

        outcome = reconciler.reconcile(Scope.app(), push=False)

        assert outcome.downloaded == []
        assert server.calls == []

    def test_placeholder_fails_scope_after_other_entries(
        self, reconciler, server, store, layout
    ):
        """Test that a placeholder entry fails the scope without blocking others."""
        write_file(layout.app_dir, "config/extra.txt", b"extra")
        server.files["config/a.txt"] = b"hello"
        server.placeholders.add("config/b.txt")

        with pytest.raises(IncompleteRemoteBodyError) as exc_info:
            reconciler.reconcile(Scope.app(), push=False)

        assert exc_info.value.relative_path == "config/b.txt"
        assert (layout.app_dir / "config/a.txt").read_bytes() == b"hello"
        # Local deletions are skipped when the scope fails
        assert (layout.app_dir / "config/extra.txt").exists()
        assert store.get_scope_etag(ScopeKind.APP) is None

    def test_placeholder_listed_first_does_not_block_later_entries(
        self, server, store, layout
    ):
        """Test that entries after a failing one are still processed."""
        manifests = Mock()
        manifests.fetch_manifest.return_value = ManifestDocument(
            etag="v1",
            entries=[
                ManifestEntry("config/b.txt", None, 0, "files/config/b.txt"),
                ManifestEntry(
                    "config/a.txt", md5_of(b"hello"), 5, "files/config/a.txt"
                ),
            ],
        )
        server.files["config/a.txt"] = b"hello"
        reconciler = ScopeReconciler(manifests, server, store, layout)

        with pytest.raises(IncompleteRemoteBodyError):
            reconciler.reconcile(Scope.app(), push=False)

        assert (layout.app_dir / "config/a.txt").read_bytes() == b"hello"

    def test_missing_locator_is_malformed(self, server, store, layout):
        """Test that an entry without download locator fails the scope."""
        manifests = Mock()
        manifests.fetch_manifest.return_value = ManifestDocument(
            etag="v1",
            entries=[ManifestEntry("config/a.txt", md5_of(b"hello"), 5, None)],
        )
        reconciler = ScopeReconciler(manifests, server, store, layout)

        with pytest.raises(MalformedManifestError):
            reconciler.reconcile(Scope.app(), push=False)

        assert store.get_scope_etag(ScopeKind.APP) is None

    def test_absolute_manifest_path_is_malformed(self, server, store, layout, tmp_path):
        """Test that an absolute entry path is never written to."""
        outside = tmp_path / "outside.txt"
        server.files["config/a.txt"] = b"a"
        manifests = Mock()
        manifests.fetch_manifest.return_value = ManifestDocument(
            etag="v1",
            entries=[
                ManifestEntry(str(outside), md5_of(b"x"), 1, "files/outside.txt"),
                ManifestEntry("config/a.txt", md5_of(b"a"), 1, "files/config/a.txt"),
            ],
        )
        reconciler = ScopeReconciler(manifests, server, store, layout)

        with pytest.raises(MalformedManifestError, match="not relative"):
            reconciler.reconcile(Scope.app(), push=False)

        assert not outside.exists()
        assert server.calls == [("download", "config/a.txt")]
        assert store.get_scope_etag(ScopeKind.APP) is None

    def test_parent_directory_path_is_malformed(self, server, store, layout, tmp_path):
        """Test that an entry path climbing out of the app folder is rejected."""
        manifests = Mock()
        manifests.fetch_manifest.return_value = ManifestDocument(
            etag="v1",
            entries=[
                ManifestEntry("../../escaped.txt", md5_of(b"x"), 1, "files/escaped.txt")
            ],
        )
        reconciler = ScopeReconciler(manifests, server, store, layout)

        with pytest.raises(MalformedManifestError, match="outside"):
            reconciler.reconcile(Scope.app(), push=False)

        assert not (tmp_path / "escaped.txt").exists()
        assert server.calls == []

    def test_file_tags_are_saved_once_per_pull(self, reconciler, server, store, layout):
        """Test that the hash cache is written in bulk, not once per file."""
        for name in ("a", "b", "c"):
            server.files[f"config/{name}.txt"] = name.encode()

        with patch.object(store, "_save", wraps=store._save) as save:
            outcome = reconciler.reconcile(Scope.app(), push=False)

        assert len(outcome.downloaded) == 3
        # One write for the file tags, one for the ETag.
        assert save.call_count == 2
        mtime = os.stat(layout.app_dir / "config/a.txt").st_mtime_ns
        reloaded = JsonSyncStateStore("default", state_dir=store.state_dir)
        assert reloaded.get_file_tag("files/config/a.txt", None, mtime) == md5_of(b"a")

    def test_local_delete_failure_keeps_etag(
        self, reconciler, server, store, layout, monkeypatch
    ):
        """Test that a failed local deletion degrades the outcome but does not abort."""
        write_file(layout.app_dir, "config/locked.txt", b"in use")
        write_file(layout.app_dir, "config/other.txt", b"other")
        server.files["config/a.txt"] = b"aaa"

        original_unlink = Path.unlink

        def failing_unlink(self, *args, **kwargs):
            if self.name == "locked.txt":
                raise PermissionError("file is in use")
            return original_unlink(self, *args, **kwargs)

        monkeypatch.setattr(Path, "unlink", failing_unlink)

        outcome = reconciler.reconcile(Scope.app(), push=False)

        assert outcome.failed_local_deletes == ["config/locked.txt"]
        assert outcome.deleted_local == ["config/other.txt"]
        assert outcome.downloaded == ["config/a.txt"]
        assert not outcome.entirely_match
        assert (layout.app_dir / "config/locked.txt").exists()
        assert store.get_scope_etag(ScopeKind.APP) is None

    def test_table_pull_leaves_other_tables_alone(self, reconciler, server, layout):
        """Test that csv assets of other tables are not deleted by a table pull."""
        write_file(layout.app_dir, "config/assets/csv/birds.csv", b"c,d")
        server.files["config/tables/trees/definition.csv"] = b"def"
        server.files["config/assets/csv/trees.csv"] = b"a,b"

        outcome = reconciler.reconcile(Scope.table("trees"), push=False)

        assert sorted(outcome.downloaded) == [
            "config/assets/csv/trees.csv",
            "config/tables/trees/definition.csv",
        ]
        assert outcome.deleted_local == []
        assert (layout.app_dir / "config/assets/csv/birds.csv").exists()

    def test_table_properties_callback(self, reconciler, server, layout):
        """Test that a changed properties file triggers the callback once."""
        server.files["config/tables/trees/properties.csv"] = b"key,value"
        callback = Mock()

        reconciler.reconcile(
            Scope.table("trees"), push=False, on_table_properties_changed=callback
        )

        callback.assert_called_once_with("trees")

    def test_unchanged_table_properties_do_not_trigger_callback(
        self, reconciler, server, layout
    ):
        """Test that an up-to-date properties file does not trigger the callback."""
        write_file(layout.app_dir, "config/tables/trees/properties.csv", b"key,value")
        server.files["config/tables/trees/properties.csv"] = b"key,value"
        server.files["config/tables/trees/definition.csv"] = b"def"
        callback = Mock()

        reconciler.reconcile(
            Scope.table("trees"), push=False, on_table_properties_changed=callback
        )

        callback.assert_not_called()


class TestDownloadIfStale:
    """Tests for the per-entry download decision."""

    def test_zero_length_entry_raises(self, reconciler, layout):
        """Test that a placeholder entry raises an incomplete body error."""
        entry = ManifestEntry("config/a.txt", None, 0, "files/config/a.txt")

        with pytest.raises(IncompleteRemoteBodyError):
            reconciler.download_if_stale(entry, layout.as_app_file(entry.relative_path))

    def test_empty_file_name_raises(self, reconciler, layout):
        """Test that an entry without file name is malformed."""
        entry = ManifestEntry("", md5_of(b"x"), 1, "files/x")

        with pytest.raises(MalformedManifestError):
            reconciler.download_if_stale(entry, layout.as_app_file("x"))

    def test_fresh_hash_is_cached(self, server, store, layout):
        """Test that a freshly computed hash is stored and reused next time."""
        write_file(layout.app_dir, "config/a.txt", b"same")
        server.files["config/a.txt"] = b"same"
        hasher = Mock(side_effect=compute_md5_hash)
        reconciler = ScopeReconciler(server, server, store, layout, hasher=hasher)

        reconciler.reconcile(Scope.app(), push=False)
        reconciler.reconcile(Scope.app(), push=False)

        assert hasher.call_count == 1
        assert server.calls == []

    def test_downloaded_file_is_not_rehashed(self, server, store, layout):
        """Test that the tag stored after a download avoids hashing the new file."""
        server.files["config/a.txt"] = b"fresh"
        hasher = Mock(side_effect=compute_md5_hash)
        reconciler = ScopeReconciler(server, server, store, layout, hasher=hasher)

        reconciler.reconcile(Scope.app(), push=False)
        reconciler.reconcile(Scope.app(), push=False)

        hasher.assert_not_called()
        assert server.calls == [("download", "config/a.txt")]

    def test_modified_file_is_hashed_again(self, server, store, layout):
        """Test that a cached tag is ignored once the file's mtime changes."""
        server.files["config/a.txt"] = b"fresh"
        reconciler = ScopeReconciler(server, server, store, layout)
        reconciler.reconcile(Scope.app(), push=False)

        local_file = layout.app_dir / "config/a.txt"
        local_file.write_bytes(b"edited locally")
        stat = local_file.stat()
        os.utime(local_file, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))

        outcome = reconciler.reconcile(Scope.app(), push=False)

        assert outcome.downloaded == ["config/a.txt"]
        assert local_file.read_bytes() == b"fresh"


class TestETagShortCircuit:
    """Tests for ETag handling."""

    def test_repeated_push_transfers_nothing(self, reconciler, server, store, layout):
        """Test that a second push moves no files and a third one is skipped."""
        write_file(layout.app_dir, "config/a.txt", b"aaa")
        reconciler.reconcile(Scope.app(), push=True)
        calls_after_first_run = list(server.calls)

        # The stored ETag predates the upload, so the manifest is fetched again
        second = reconciler.reconcile(
            Scope.app(last_etag=store.get_scope_etag(ScopeKind.APP)), push=True
        )
        third = reconciler.reconcile(
            Scope.app(last_etag=store.get_scope_etag(ScopeKind.APP)), push=True
        )

        assert second.manifest_changed
        assert second.transfer_count == 0
        assert not third.manifest_changed
        assert server.calls == calls_after_first_run

    def test_second_pull_transfers_nothing(self, reconciler, server, layout):
        """Test that re-running a pull without changes moves no files."""
        server.files["config/a.txt"] = b"aaa"
        write_file(layout.app_dir, "config/stale.txt", b"x")
        reconciler.reconcile(Scope.app(), push=False)
        server.calls.clear()

        outcome = reconciler.reconcile(Scope.app(), push=False)

        assert outcome.manifest_changed
        assert outcome.transfer_count == 0
        assert server.calls == []

    def test_state_store_errors_are_swallowed(self, server, layout):
        """Test that failing to persist the ETag does not fail the sync."""
        write_file(layout.app_dir, "config/a.txt", b"aaa")
        failing_store = Mock(spec=JsonSyncStateStore)
        failing_store.update_scope_etag.side_effect = StateStoreError("disk full")
        reconciler = ScopeReconciler(server, server, failing_store, layout)

        outcome = reconciler.reconcile(Scope.app(), push=True)

        assert outcome.entirely_match
        assert outcome.uploaded == ["config/a.txt"]
        failing_store.update_scope_etag.assert_called_once()

    def test_row_scope_is_rejected(self, reconciler):
        """Test that row scopes must go through the attachment reconciler."""
        with pytest.raises(ValueError):
            reconciler.reconcile(Scope(kind=ScopeKind.ROW), push=False)


class TestProgressReporting:
    """Tests for progress events."""

    def test_one_event_per_unit_of_work(self, reconciler, server, layout):
        """Test that every upload and deletion yields one increasing event."""
        write_file(layout.app_dir, "config/a.txt", b"aaa")
        write_file(layout.app_dir, "config/b.txt", b"bbb")
        server.files["config/old.txt"] = b"old"
        events = []

        reconciler.reconcile(
            Scope.app(), push=True, reporter=CallbackProgressReporter(events.append)
        )

        assert [e.step for e in events] == [
            ProgressStep.GETTING_MANIFEST,
            ProgressStep.UPLOADING_LOCAL_FILE,
            ProgressStep.UPLOADING_LOCAL_FILE,
            ProgressStep.DELETING_FILE_ON_SERVER,
        ]
        percents = [e.percent for e in events]
        assert percents == sorted(percents)
        assert all(0 < p <= 100 for p in percents)
        assert events[1].description == "Uploading config/a.txt"

    def test_pull_reports_verification_and_deletion(self, reconciler, server, layout):
        """Test the step labels of a pull."""
        write_file(layout.app_dir, "config/extra.txt", b"x")
        server.files["config/a.txt"] = b"aaa"
        events = []

        reconciler.reconcile(
            Scope.app(), push=False, reporter=CallbackProgressReporter(events.append)
        )

        assert [e.step for e in events] == [
            ProgressStep.GETTING_MANIFEST,
            ProgressStep.VERIFYING_LOCAL_FILE,
            ProgressStep.DELETING_LOCAL_FILE,
        ]
        percents = [e.percent for e in events]
        assert percents == sorted(percents)

    def test_unchanged_manifest_reports_completion(self, reconciler, server, store):
        """Test that a short-circuited scope jumps to 100 percent."""
        reconciler.reconcile(Scope.app(), push=False)
        events = []

        reconciler.reconcile(
            Scope.app(last_etag=store.get_scope_etag(ScopeKind.APP)),
            push=False,
            reporter=CallbackProgressReporter(events.append),
        )

        assert [e.percent for e in events] == [1.0, 100.0]
