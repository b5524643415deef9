"""Unit tests for utility functions."""

import hashlib

from manifestsync.utils import (
    MAX_BATCH_SIZE,
    compute_fingerprint,
    compute_md5_hash,
    file_mtime,
    format_size,
)


class TestComputeMd5Hash:
    """Tests for compute_md5_hash function."""

    def test_hash_has_server_prefix(self, tmp_path):
        """Test that the local hash matches the server format."""
        path = tmp_path / "a.txt"
        path.write_bytes(b"hello world")

        expected = "md5:" + hashlib.md5(b"hello world").hexdigest()
        assert compute_md5_hash(path) == expected

    def test_empty_file(self, tmp_path):
        """Test hashing an empty file."""
        path = tmp_path / "empty"
        path.write_bytes(b"")

        assert compute_md5_hash(path) == "md5:d41d8cd98f00b204e9800998ecf8427e"

    def test_large_file_is_read_in_chunks(self, tmp_path):
        """Test that files larger than one chunk hash correctly."""
        content = b"0123456789" * 20_000
        path = tmp_path / "large.bin"
        path.write_bytes(content)

        assert compute_md5_hash(path) == "md5:" + hashlib.md5(content).hexdigest()


class TestComputeFingerprint:
    """Tests for compute_fingerprint function."""

    def test_order_independent(self):
        """Test that reordering references keeps the fingerprint."""
        assert compute_fingerprint(["b", "a"]) == compute_fingerprint(["a", "b"])

    def test_empty(self):
        """Test the fingerprint of no references."""
        assert compute_fingerprint([]) == "md5:d41d8cd98f00b204e9800998ecf8427e"


class TestFileMtime:
    """Tests for file_mtime function."""

    def test_nanoseconds(self, tmp_path):
        """Test that the modification time is reported in nanoseconds."""
        path = tmp_path / "a.txt"
        path.write_bytes(b"a")

        assert file_mtime(path) == path.stat().st_mtime_ns


class TestFormatSize:
    """Tests for format_size function."""

    def test_units(self):
        """Test size formatting across units."""
        assert format_size(512) == "512 B"
        assert format_size(1536) == "1.5 KB"
        assert format_size(MAX_BATCH_SIZE) == "10.0 MB"
        assert format_size(3 * 1024**3) == "3.0 GB"
