"""Directory scanning utilities for sync operations."""

import logging
from collections import deque
from collections.abc import Iterable
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class DirectoryScanner:
    """Walks a local subtree and lists the files it contains.

    Paths are reported relative to a base directory (normally the
    application directory) using forward slashes, so they can be compared
    directly with the file names of a server manifest.

    Examples:
        >>> scanner = DirectoryScanner()
        >>> scanner.scan(Path("/odk/default/config"), base=Path("/odk/default"))
        ['config/assets/index.html', ...]
    """

    def scan(
        self,
        root: Path,
        base: Optional[Path] = None,
        excluded_names: Iterable[str] = (),
        excluded_paths: Iterable[Path] = (),
    ) -> list[str]:
        """Recursively list the files under ``root``.

        Every call performs a fresh breadth-first walk. Excluded items are
        skipped and, for directories, not descended into.

        Args:
            root: Directory to scan
            base: Base path for relative paths (defaults to root)
            excluded_names: Names of immediate children of root to skip
            excluded_paths: Files or directories anywhere in the tree to skip

        Returns:
            List of base-relative paths. Empty if root does not exist or is
            not a directory (the latter is logged as an error).
            Symlinked directories below root are not followed.
        """
        if base is None:
            base = root

        if not root.exists():
            return []
        if not root.is_dir():
            logger.error(f"Folder is not a directory: {root}")
            return []

        names = set(excluded_names)
        skipped = {Path(p) for p in excluded_paths}

        relative_paths: list[str] = []
        unexplored: deque[Path] = deque([root])

        while unexplored:
            exploring = unexplored.popleft()
            try:
                children = sorted(exploring.iterdir())
            except OSError as e:
                logger.warning(f"Skipping unreadable directory {exploring}: {e}")
                continue

            for item in children:
                if exploring == root and item.name in names:
                    logger.debug(f"Excluding {item}")
                    continue
                if item in skipped:
                    logger.debug(f"Excluding {item}")
                    continue

                if item.is_dir():
                    if item.is_symlink():
                        # Linked folders may loop back into the tree.
                        logger.debug(f"Skipping symlinked directory {item}")
                        continue
                    unexplored.append(item)
                else:
                    relative_paths.append(item.relative_to(base).as_posix())

        return relative_paths
