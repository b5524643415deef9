"""Shared fixtures: an in-memory sync server and an application folder."""

import hashlib
from pathlib import Path
from typing import Optional

import pytest

from manifestsync.models import (
    ManifestDocument,
    ManifestEntry,
    RowAttachments,
    Scope,
    ScopeKind,
    TransferItem,
)
from manifestsync.sync import AppLayout, JsonSyncStateStore
from manifestsync.sync.layout import ASSETS_CSV_PREFIX, filter_table_id_files


def md5_of(content: bytes) -> str:
    return "md5:" + hashlib.md5(content).hexdigest()


class FakeSyncServer:
    """In-memory server implementing ManifestSource and TransferExecutor."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.placeholders: set[str] = set()
        self.row_files: dict[tuple[str, str], dict[str, bytes]] = {}
        self.row_placeholders: dict[tuple[str, str], set[str]] = {}
        self.calls: list[tuple[str, ...]] = []
        self.fetched_scopes: list[Scope] = []

    # ManifestSource

    def _scope_paths(self, scope: Scope) -> list[str]:
        paths = sorted(set(self.files) | self.placeholders)
        if scope.kind == ScopeKind.APP:
            return [
                p
                for p in paths
                if p.startswith("config/")
                and not p.startswith("config/tables/")
                and not p.startswith(ASSETS_CSV_PREFIX)
            ]
        table_prefix = f"config/tables/{scope.table_id}/"
        in_table = [p for p in paths if p.startswith(table_prefix)]
        return in_table + filter_table_id_files(paths, scope.table_id or "")

    def _entry(self, path: str, content: Optional[bytes], url: str) -> ManifestEntry:
        if content is None:
            return ManifestEntry(path, None, 0, url)
        return ManifestEntry(path, md5_of(content), len(content), url)

    @staticmethod
    def _etag(entries: list[ManifestEntry]) -> str:
        digest = hashlib.md5()
        for entry in entries:
            digest.update(f"{entry.relative_path}={entry.content_hash};".encode())
        return digest.hexdigest()

    def fetch_manifest(self, scope: Scope) -> Optional[ManifestDocument]:
        self.fetched_scopes.append(scope)
        if scope.kind == ScopeKind.ROW:
            key = (scope.table_id or "", scope.row_id or "")
            files = self.row_files.get(key, {})
            entries = [
                self._entry(name, content, f"rows/{name}")
                for name, content in sorted(files.items())
            ]
            entries += [
                self._entry(name, None, f"rows/{name}")
                for name in sorted(self.row_placeholders.get(key, set()))
            ]
        else:
            entries = [
                self._entry(
                    path,
                    None if path in self.placeholders else self.files[path],
                    f"files/{path}",
                )
                for path in self._scope_paths(scope)
            ]

        etag = self._etag(entries)
        if scope.last_etag == etag:
            return None
        return ManifestDocument(etag=etag, entries=entries)

    # TransferExecutor

    def upload_file(self, local_path: Path, relative_path: str) -> None:
        self.calls.append(("upload", relative_path))
        self.files[relative_path] = local_path.read_bytes()
        self.placeholders.discard(relative_path)

    def delete_file(self, relative_path: str) -> None:
        self.calls.append(("delete", relative_path))
        self.files.pop(relative_path, None)
        self.placeholders.discard(relative_path)

    def download_file(self, local_path: Path, download_url: str) -> None:
        relative_path = download_url[len("files/"):]
        self.calls.append(("download", relative_path))
        local_path.write_bytes(self.files[relative_path])

    def upload_batch(self, items: list[TransferItem], row: RowAttachments) -> None:
        self.calls.append(("upload_batch",) + tuple(i.relative_path for i in items))
        files = self.row_files.setdefault((row.table_id, row.row_id), {})
        for item in items:
            files[item.relative_path] = item.local_path.read_bytes()
            self.row_placeholders.get((row.table_id, row.row_id), set()).discard(
                item.relative_path
            )

    def download_batch(self, items: list[TransferItem], row: RowAttachments) -> None:
        self.calls.append(("download_batch",) + tuple(i.relative_path for i in items))
        files = self.row_files[(row.table_id, row.row_id)]
        for item in items:
            item.local_path.write_bytes(files[item.relative_path])


def write_file(base: Path, relative_path: str, content: bytes) -> Path:
    path = base / relative_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


@pytest.fixture
def server():
    """Create an empty in-memory sync server."""
    return FakeSyncServer()


@pytest.fixture
def layout(tmp_path):
    """Create the layout of an application folder."""
    app_dir = tmp_path / "odk" / "default"
    app_dir.mkdir(parents=True)
    return AppLayout(app_dir)


@pytest.fixture
def store(tmp_path):
    """Create a JSON state store in a temporary directory."""
    return JsonSyncStateStore("default", state_dir=tmp_path / "state")
