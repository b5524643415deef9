"""Persistent sync state: manifest ETags and the per-file hash cache.

The state of one application is kept in a single JSON document in the
user's config directory. The document name includes a digest of the
local application folder and the server URL, so the same application
synced from another folder or against another server starts fresh. It remembers, per scope, the manifest ETag of the
last sync after which the device and the server matched exactly, which
lets the next sync skip unchanged scopes entirely.
"""

import hashlib
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..exceptions import StateStoreError
from ..models import AttachmentState, ScopeKind

logger = logging.getLogger(__name__)


def _scope_key(kind: ScopeKind, table_id: Optional[str]) -> str:
    if kind == ScopeKind.APP:
        return "app"
    if kind == ScopeKind.TABLE:
        return f"table:{table_id}"
    raise ValueError("Row scopes are stored with update_row_manifest_tag")


def _file_key(locator: str, table_id: Optional[str], mtime: int) -> str:
    return f"{table_id or ''}|{mtime}|{locator}"


class JsonSyncStateStore:
    """Stores sync state for one application in a JSON file.

    Layout of the document::

        {
            "scopes": {"app": "<etag>", "table:<tableId>": "<etag>"},
            "rows": {"<tableId>/<rowId>": {"state": ..., "fingerprint": ..., "etag": ...}},
            "files": {"<tableId>|<mtime>|<locator>": "<hash>"},
            "app_dir": "<local application folder>",
            "server_url": "<server>",
            "updated_at": "<iso timestamp>"
        }
    """

    def __init__(
        self,
        app_name: str,
        state_dir: Optional[Path] = None,
        app_dir: Optional[Path] = None,
        server_url: Optional[str] = None,
    ):
        """Initialize the state store.

        Args:
            app_name: Application whose state is stored
            state_dir: Directory for state files. Defaults to
                      ~/.config/manifestsync/sync_state/
            app_dir: Local application folder the state belongs to
            server_url: Server the state was recorded against
        """
        if state_dir is None:
            state_dir = Path.home() / ".config" / "manifestsync" / "sync_state"
        self.app_name = app_name
        self.state_dir = Path(state_dir)
        self.app_dir = Path(app_dir).resolve() if app_dir is not None else None
        self.server_url = server_url.rstrip("/") if server_url else None
        self._data: Optional[dict[str, Any]] = None
        self._dirty = False

    @property
    def state_file(self) -> Path:
        """Path to the JSON document of this application."""
        if self.app_dir is None and self.server_url is None:
            return self.state_dir / f"{self.app_name}.json"
        location = f"{self.server_url or ''}\n{self.app_dir or ''}"
        digest = hashlib.sha256(location.encode("utf-8")).hexdigest()[:16]
        return self.state_dir / f"{self.app_name}-{digest}.json"

    def _load(self) -> dict[str, Any]:
        if self._data is not None:
            return self._data

        data: dict[str, Any] = {}
        if self.state_file.exists():
            try:
                with open(self.state_file, encoding="utf-8") as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    data = loaded
                else:
                    logger.warning(f"Ignoring malformed sync state in {self.state_file}")
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Failed to load sync state: {e}")
        else:
            logger.debug(f"No sync state found at {self.state_file}")

        for section in ("scopes", "rows", "files"):
            data.setdefault(section, {})
        self._data = data
        return data

    def _save(self) -> None:
        data = self._load()
        data["updated_at"] = datetime.now().isoformat()
        if self.app_dir is not None:
            data["app_dir"] = str(self.app_dir)
        if self.server_url is not None:
            data["server_url"] = self.server_url
        tmp_file = self.state_file.with_suffix(".json.tmp")
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_file, self.state_file)
        except OSError as e:
            raise StateStoreError(f"Failed to save sync state: {e}") from e
        self._dirty = False
        logger.debug(f"Saved sync state to {self.state_file}")

    # Scope ETags

    def get_scope_etag(
        self, kind: ScopeKind, table_id: Optional[str] = None
    ) -> Optional[str]:
        return self._load()["scopes"].get(_scope_key(kind, table_id))

    def update_scope_etag(
        self, kind: ScopeKind, table_id: Optional[str], etag: Optional[str]
    ) -> None:
        scopes = self._load()["scopes"]
        key = _scope_key(kind, table_id)
        if etag is None:
            scopes.pop(key, None)
        else:
            scopes[key] = etag
        self._save()

    # Row manifest tags

    def get_row_manifest_tag(
        self,
        table_id: str,
        row_id: str,
        state: AttachmentState,
        fingerprint: str,
    ) -> Optional[str]:
        """Return the stored row ETag if it was stored for the same state and references."""
        record = self._load()["rows"].get(f"{table_id}/{row_id}")
        if not record:
            return None
        if record.get("state") != state.value or record.get("fingerprint") != fingerprint:
            return None
        return record.get("etag")

    def update_row_manifest_tag(
        self,
        table_id: str,
        row_id: str,
        state: AttachmentState,
        fingerprint: str,
        etag: Optional[str],
    ) -> None:
        self._load()["rows"][f"{table_id}/{row_id}"] = {
            "state": state.value,
            "fingerprint": fingerprint,
            "etag": etag,
        }
        self._save()

    # Per-file hash cache

    def get_file_tag(
        self, locator: str, table_id: Optional[str], mtime: int
    ) -> Optional[str]:
        return self._load()["files"].get(_file_key(locator, table_id, mtime))

    def update_file_tag(
        self, locator: str, table_id: Optional[str], mtime: int, content_hash: str
    ) -> None:
        """Record a file hash; it is written on flush() or the next ETag update."""
        files = self._load()["files"]
        prefix = f"{table_id or ''}|"
        suffix = f"|{locator}"
        # Drop entries recorded for older modification times of the same file.
        for key in [k for k in files if k.startswith(prefix) and k.endswith(suffix)]:
            del files[key]
        files[_file_key(locator, table_id, mtime)] = content_hash
        self._dirty = True

    def flush(self) -> None:
        """Write file tags recorded since the last save."""
        if self._dirty:
            self._save()

    def clear(self) -> bool:
        """Forget all stored state of this application.

        Returns:
            True if state was cleared, False if no state existed
        """
        self._data = None
        self._dirty = False
        if self.state_file.exists():
            self.state_file.unlink()
            logger.debug(f"Cleared sync state at {self.state_file}")
            return True
        return False
