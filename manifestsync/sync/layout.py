"""On-disk layout of an application directory.

An application directory looks like::

    <root>/<app>/
        config/
            assets/
                csv/            table-scoped asset files (synced per table)
                tables.init     one-time initialization file (never synced)
            tables/<tableId>/   table config files (synced per table)
            ...                 everything else is synced at app level
        data/
            tables/<tableId>/instances/<rowId>/   row attachments
"""

import logging
import os
from pathlib import Path, PurePosixPath
from typing import Optional

from ..exceptions import MalformedManifestError
from .scanner import DirectoryScanner

logger = logging.getLogger(__name__)

CONFIG_FOLDER = "config"
DATA_FOLDER = "data"
TABLES_FOLDER = "tables"
ASSETS_FOLDER = "assets"
CSV_FOLDER = "csv"
INSTANCES_FOLDER = "instances"
TABLES_INIT_FILE = "tables.init"
TABLE_PROPERTIES_FILE = "properties.csv"

ASSETS_CSV_PREFIX = f"{CONFIG_FOLDER}/{ASSETS_FOLDER}/{CSV_FOLDER}/"


def filter_table_id_files(relative_paths: list[str], table_id: str) -> list[str]:
    """Keep the ``config/assets/csv`` files that belong to a table.

    By convention these files start with the table id (``<tableId>.csv``,
    ``<tableId>.<qualifier>.csv``) and media attachments of the table live
    in a ``config/assets/csv/<tableId>/`` directory.

    Args:
        relative_paths: App-relative paths
        table_id: Table identifier

    Returns:
        Matching paths, in input order

    Examples:
        >>> filter_table_id_files(
        ...     ["config/assets/csv/trees.csv", "config/assets/csv/birds.csv"],
        ...     "trees",
        ... )
        ['config/assets/csv/trees.csv']
    """
    matching = []
    for relative_path in relative_paths:
        if not relative_path.startswith(ASSETS_CSV_PREFIX):
            continue
        parts = relative_path.split("/")
        if len(parts) < 4:
            continue
        if parts[3] == table_id or parts[3].split(".")[0] == table_id:
            matching.append(relative_path)
    return matching


class AppLayout:
    """Resolves the folders of one application and enumerates its files."""

    def __init__(self, app_dir: Path, scanner: Optional[DirectoryScanner] = None):
        """Initialize the layout.

        Args:
            app_dir: Application directory (``<root>/<app>``)
            scanner: Directory scanner to use (default: new DirectoryScanner)
        """
        self.app_dir = Path(app_dir)
        self.scanner = scanner or DirectoryScanner()

    @classmethod
    def from_root(cls, root: Path, app_name: str) -> "AppLayout":
        return cls(Path(root) / app_name)

    @property
    def config_dir(self) -> Path:
        return self.app_dir / CONFIG_FOLDER

    @property
    def tables_dir(self) -> Path:
        return self.config_dir / TABLES_FOLDER

    @property
    def assets_csv_dir(self) -> Path:
        return self.config_dir / ASSETS_FOLDER / CSV_FOLDER

    @property
    def tables_init_file(self) -> Path:
        return self.config_dir / ASSETS_FOLDER / TABLES_INIT_FILE

    def table_dir(self, table_id: str) -> Path:
        return self.tables_dir / table_id

    def table_properties_file(self, table_id: str) -> str:
        """App-relative path of a table's properties file."""
        return self.as_relative_path(self.table_dir(table_id) / TABLE_PROPERTIES_FILE)

    def instance_dir(self, table_id: str, row_id: str) -> Path:
        """Folder holding the attachments of a row."""
        return (
            self.app_dir
            / DATA_FOLDER
            / TABLES_FOLDER
            / table_id
            / INSTANCES_FOLDER
            / row_id
        )

    def as_app_file(self, relative_path: str) -> Path:
        """Resolve an app-relative path to a local path.

        Raises:
            MalformedManifestError: If the path is absolute or leaves the
                application folder
        """
        return _contained_path(self.app_dir, relative_path)

    def as_attachment_file(self, table_id: str, row_id: str, reference: str) -> Path:
        """Resolve an attachment reference to a file in the row's instance folder.

        Raises:
            MalformedManifestError: If the reference is absolute or leaves
                the instance folder
        """
        if not reference:
            raise MalformedManifestError(f"Row {row_id} has an empty attachment reference")
        return _contained_path(self.instance_dir(table_id, row_id), reference)

    def as_relative_path(self, path: Path) -> str:
        """Convert a local path inside the application to an app-relative path."""
        return Path(path).relative_to(self.app_dir).as_posix()

    def get_app_level_files(self) -> list[str]:
        """List the app-level config files on this device.

        Table config folders, table-scoped csv assets and the tables
        initialization file are excluded; they are synced per table or
        never synced.

        Returns:
            App-relative paths; empty if the application or config folder
            is missing or not a directory.
        """
        if not self.app_dir.exists():
            return []
        if not self.app_dir.is_dir():
            logger.error(f"Application folder is not a directory: {self.app_dir}")
            return []

        return self.scanner.scan(
            self.config_dir,
            base=self.app_dir,
            excluded_paths=[self.tables_dir, self.assets_csv_dir, self.tables_init_file],
        )

    def get_table_level_files(self, table_id: str) -> list[str]:
        """List the config files of one table on this device.

        Args:
            table_id: Table identifier

        Returns:
            Files under the table's config folder followed by the
            table's ``config/assets/csv`` files.
        """
        csv_files = filter_table_id_files(
            self.scanner.scan(self.assets_csv_dir, base=self.app_dir), table_id
        )
        table_files = self.scanner.scan(self.table_dir(table_id), base=self.app_dir)
        return table_files + csv_files


def _contained_path(base: Path, relative_path: str) -> Path:
    """Join ``relative_path`` onto ``base``, refusing paths outside of it.

    An empty path maps to ``base`` itself so callers can report it as a
    missing file name.
    """
    if not relative_path:
        return base
    if PurePosixPath(relative_path).is_absolute() or Path(relative_path).is_absolute():
        raise MalformedManifestError(
            f"Path {relative_path} is not relative", relative_path
        )

    candidate = base / relative_path
    normalized_base = os.path.abspath(base)
    normalized = os.path.abspath(candidate)
    if os.path.commonpath([normalized_base, normalized]) != normalized_base or (
        normalized == normalized_base
    ):
        raise MalformedManifestError(
            f"Path {relative_path} points outside of {base}", relative_path
        )
    return candidate
