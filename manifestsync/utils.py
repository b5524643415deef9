"""Utility functions for manifestsync."""

import hashlib
from collections.abc import Iterable
from pathlib import Path

# =============================================================================
# Constants for file operations
# =============================================================================

# Maximum number of bytes in one bulk upload/download request for row
# attachments (10 MB)
MAX_BATCH_SIZE: int = 10 * 1024 * 1024

# Read size used when hashing and streaming files (64 KB)
DEFAULT_CHUNK_SIZE: int = 64 * 1024

# Retry configuration for transient transport errors
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 1.0  # seconds

# Version segment of the server's file and manifest URLs
DEFAULT_CLIENT_VERSION: str = "2"

# Prefix the server puts in front of content hashes
MD5_PREFIX: str = "md5:"


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"


# =============================================================================
# Hash calculation utilities
# =============================================================================


def compute_md5_hash(file_path: Path) -> str:
    """Calculate the content hash of a local file as the server reports it.

    The server prefixes MD5 digests with ``md5:``, so the local value
    carries the same prefix to allow direct string comparison.

    Args:
        file_path: Path of the file to hash

    Returns:
        Hash string such as ``md5:d41d8cd98f00b204e9800998ecf8427e``

    Raises:
        OSError: If the file cannot be read
    """
    md5 = hashlib.md5()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(DEFAULT_CHUNK_SIZE), b""):
            md5.update(chunk)
    return MD5_PREFIX + md5.hexdigest()


def compute_fingerprint(attachment_refs: Iterable[str]) -> str:
    """Summarize the set of attachments referenced by a row.

    The fingerprint only depends on which attachments the row references,
    not on whether the files exist locally or on the server. Order and
    duplicates do not matter.

    Args:
        attachment_refs: Row-relative attachment paths

    Returns:
        Hash string with ``md5:`` prefix

    Examples:
        >>> compute_fingerprint(["b.jpg", "a.jpg"]) == compute_fingerprint(["a.jpg", "b.jpg"])
        True
    """
    md5 = hashlib.md5()
    for ref in sorted(set(attachment_refs)):
        md5.update(ref.encode("utf-8"))
        md5.update(b"\n")
    return MD5_PREFIX + md5.hexdigest()


def file_mtime(file_path: Path) -> int:
    """Return the modification time of a file in nanoseconds.

    Used together with the download locator as the key of the per-file
    hash cache.
    """
    return file_path.stat().st_mtime_ns
