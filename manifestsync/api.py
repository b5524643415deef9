"""HTTP client for the manifest sync server."""

from __future__ import annotations

import logging
import mimetypes
import os
import random
import time
from email.message import Message
from email.parser import BytesHeaderParser
from pathlib import Path
from typing import Any, Iterator
from urllib.parse import quote

import httpx

from .config import config
from .exceptions import (
    AuthenticationError,
    ConfigError,
    DownloadError,
    InvalidResponseError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    TransportError,
    UploadError,
)
from .models import ManifestDocument, RowAttachments, Scope, ScopeKind, TransferItem
from .utils import DEFAULT_CHUNK_SIZE, DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY

logger = logging.getLogger(__name__)


class SyncClient:
    """Client for the manifest sync server.

    Implements both ``ManifestSource`` and ``TransferExecutor``, so a single
    instance can be handed to ``SyncEngine`` for both roles.
    """

    def __init__(
        self,
        server_url: str | None = None,
        app_name: str | None = None,
        api_key: str | None = None,
        client_version: str | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize sync client.

        Args:
            server_url: Base URL of the server (uses config if not provided)
            app_name: Application to synchronize (uses config if not provided)
            api_key: Optional bearer token (uses config if not provided)
            client_version: Protocol version used in file URLs
            max_retries: Maximum number of retry attempts (default: 3)
            retry_delay: Initial delay between retries in seconds (default: 1.0)
            timeout: Request timeout in seconds (default: 30.0)
            transport: Optional httpx transport, mainly for tests
        """
        self.server_url = (server_url or config.server_url or "").rstrip("/")
        self.app_name = app_name or config.app_name
        self.api_key = api_key or config.api_key
        self.client_version = client_version or config.client_version
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.transport = transport

        if not self.server_url:
            raise ConfigError(
                "Server URL not configured. Please set MANIFESTSYNC_SERVER_URL "
                "or run 'manifestsync init'."
            )

        self._client: httpx.Client | None = None

    def __enter__(self) -> SyncClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.Client(
                headers=headers,
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self.transport,
            )
        return self._client

    def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()
            self._client = None

    # =========================
    # Request handling
    # =========================

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.server_url}/{endpoint.lstrip('/')}"

    def _should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if a request should be retried.

        Args:
            exception: The exception that occurred
            attempt: Current attempt number (0-based)

        Returns:
            True if the request should be retried, False otherwise
        """
        if attempt >= self.max_retries:
            return False
        if isinstance(exception, (NetworkError, RateLimitError)):
            return True
        if isinstance(exception, httpx.HTTPStatusError):
            return 500 <= exception.response.status_code < 600
        return False

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-based)

        Returns:
            Delay in seconds
        """
        base_delay = self.retry_delay * (2**attempt)
        # +/- 25% jitter
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    def _handle_http_error(
        self,
        e: httpx.HTTPStatusError,
        attempt: int,
        error_class: type[TransportError],
    ) -> tuple[TransportError, bool]:
        """Map an HTTP error to an exception and decide whether to retry.

        Args:
            e: The HTTP error exception
            attempt: Current attempt number
            error_class: Exception type for statuses without a dedicated one

        Returns:
            Tuple of (exception to raise, should_retry)
        """
        status_code = e.response.status_code

        if status_code == 401:
            return AuthenticationError("Invalid API key or unauthorized access"), False
        if status_code == 403:
            return PermissionDeniedError("Access forbidden - check your permissions"), False
        if status_code == 404:
            return NotFoundError(f"Resource not found: {e.request.url}"), False
        if status_code == 429:
            error = RateLimitError("Rate limit exceeded - please try again later")
            return error, attempt < self.max_retries

        error_msg = f"Request failed with status {status_code}"
        try:
            if e.response.content:
                error_data = e.response.json()
                if isinstance(error_data, dict):
                    msg = (
                        error_data.get("message")
                        or error_data.get("error")
                        or error_data.get("detail")
                    )
                    if msg:
                        error_msg = f"{error_msg}: {msg}"
        except ValueError:
            pass

        should_retry = 500 <= status_code < 600 and attempt < self.max_retries
        return error_class(error_msg), should_retry

    def _send(
        self,
        method: str,
        endpoint: str,
        error_class: type[TransportError] = TransportError,
        allow_not_modified: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request with retry logic.

        Args:
            method: HTTP method
            endpoint: Path relative to the server URL, or an absolute URL
            error_class: Exception type for failed statuses without a
                dedicated exception
            allow_not_modified: Return 304 responses instead of failing
            **kwargs: Additional arguments passed to httpx

        Returns:
            The successful response

        Raises:
            TransportError: If the request fails after all retries
        """
        url = self._url(endpoint)
        last_exception: TransportError | None = None
        client = self._get_client()

        for attempt in range(self.max_retries + 1):
            try:
                response = client.request(method, url, **kwargs)
                if allow_not_modified and response.status_code == 304:
                    return response
                response.raise_for_status()
                return response

            except httpx.HTTPStatusError as e:
                error, should_retry = self._handle_http_error(e, attempt, error_class)
                last_exception = error
                if should_retry:
                    retry_after = e.response.headers.get("Retry-After")
                    if isinstance(error, RateLimitError) and retry_after and retry_after.isdigit():
                        delay = float(retry_after)
                    else:
                        delay = self._calculate_retry_delay(attempt)
                    logger.debug(f"{method} {url} failed ({error}), retrying in {delay:.1f}s")
                    time.sleep(delay)
                    continue
                raise error from e
            except httpx.RequestError as e:
                error = NetworkError(f"Network error: {e}")
                last_exception = error
                if self._should_retry(error, attempt):
                    delay = self._calculate_retry_delay(attempt)
                    logger.debug(f"{method} {url} failed ({e}), retrying in {delay:.1f}s")
                    time.sleep(delay)
                    continue
                raise error from e

        if last_exception:
            raise last_exception
        raise TransportError("Request failed after all retry attempts")

    def _parse_json(self, response: httpx.Response) -> Any:
        content_type = response.headers.get("Content-Type", "")
        if response.content and "json" not in content_type:
            if "text/html" in content_type:
                raise AuthenticationError(
                    "Server returned HTML instead of JSON - check the server URL and API key"
                )
            raise InvalidResponseError(f"Unexpected response type: {content_type}")
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise InvalidResponseError("Invalid JSON response from server") from e

    # =========================
    # Manifests
    # =========================

    def _manifest_endpoint(self, scope: Scope) -> str:
        if scope.kind == ScopeKind.APP:
            return f"{self.app_name}/manifest/{self.client_version}/"
        if scope.kind == ScopeKind.TABLE:
            return f"{self.app_name}/manifest/{self.client_version}/{quote(scope.table_id or '')}"
        return f"{self._attachments_endpoint(scope.table_id or '', scope.row_id or '')}/manifest"

    def _attachments_endpoint(self, table_id: str, row_id: str) -> str:
        return f"{self.app_name}/tables/{quote(table_id)}/attachments/{quote(row_id)}"

    def fetch_manifest(self, scope: Scope) -> ManifestDocument | None:
        """Fetch the manifest of a scope.

        Args:
            scope: App, table or row scope; ``scope.last_etag`` is sent as
                ``If-None-Match``

        Returns:
            ManifestDocument, or None if the server answered 304 Not Modified

        Raises:
            TransportError: If the request fails
            InvalidResponseError: If the body is not a manifest
        """
        headers = {}
        if scope.last_etag:
            headers["If-None-Match"] = scope.last_etag

        response = self._send(
            "GET",
            self._manifest_endpoint(scope),
            allow_not_modified=True,
            headers=headers,
        )
        if response.status_code == 304:
            logger.debug(f"Manifest of {scope.describe()} not modified")
            return None

        manifest = ManifestDocument.from_api_response(
            self._parse_json(response), response.headers.get("ETag")
        )
        logger.debug(
            f"Manifest of {scope.describe()} has {len(manifest.entries)} entries "
            f"(ETag {manifest.etag})"
        )
        return manifest

    # =========================
    # Config files
    # =========================

    def _file_endpoint(self, relative_path: str) -> str:
        return f"{self.app_name}/files/{self.client_version}/{quote(relative_path)}"

    def upload_file(self, local_path: Path, relative_path: str) -> None:
        """Upload a config file.

        Args:
            local_path: Local file to send
            relative_path: App-relative path of the file on the server

        Raises:
            UploadError: If the file cannot be read or the server rejects it
        """
        try:
            content = local_path.read_bytes()
        except OSError as e:
            raise UploadError(f"Cannot read {local_path}: {e}") from e

        mime_type, _ = mimetypes.guess_type(local_path.name)
        self._send(
            "POST",
            self._file_endpoint(relative_path),
            error_class=UploadError,
            content=content,
            headers={"Content-Type": mime_type or "application/octet-stream"},
        )
        logger.debug(f"Uploaded {relative_path} ({len(content)} bytes)")

    def delete_file(self, relative_path: str) -> None:
        """Delete a config file on the server."""
        self._send("DELETE", self._file_endpoint(relative_path))
        logger.debug(f"Deleted {relative_path} on server")

    def download_file(self, local_path: Path, download_url: str) -> None:
        """Download a file body to a local path.

        The body is streamed to a temporary sibling which then replaces the
        local file, so an interrupted download leaves the old file intact.

        Args:
            local_path: Destination path
            download_url: Absolute or server-relative locator of the body

        Raises:
            DownloadError: If the download or the write fails
            NetworkError: If the connection fails after all retries
        """
        url = self._url(download_url)
        client = self._get_client()
        tmp_path = local_path.with_name(f".{local_path.name}.part")

        for attempt in range(self.max_retries + 1):
            try:
                with client.stream("GET", url) as response:
                    response.raise_for_status()
                    with open(tmp_path, "wb") as f:
                        for chunk in response.iter_bytes(chunk_size=DEFAULT_CHUNK_SIZE):
                            f.write(chunk)
                os.replace(tmp_path, local_path)
                logger.debug(f"Downloaded {url} to {local_path}")
                return
            except httpx.HTTPStatusError as e:
                self._remove_partial(tmp_path)
                error, should_retry = self._handle_http_error(e, attempt, DownloadError)
                if not should_retry:
                    raise error from e
                time.sleep(self._calculate_retry_delay(attempt))
            except httpx.RequestError as e:
                self._remove_partial(tmp_path)
                network_error = NetworkError(f"Network error during download: {e}")
                if not self._should_retry(network_error, attempt):
                    raise network_error from e
                time.sleep(self._calculate_retry_delay(attempt))
            except OSError as e:
                self._remove_partial(tmp_path)
                raise DownloadError(f"Failed to write {local_path}: {e}") from e

    @staticmethod
    def _remove_partial(tmp_path: Path) -> None:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass

    # =========================
    # Row attachments
    # =========================

    def upload_batch(self, items: list[TransferItem], row: RowAttachments) -> None:
        """Upload a batch of attachments as one multipart request.

        Args:
            items: Attachments of the batch
            row: Row owning the attachments

        Raises:
            UploadError: If a file cannot be read or the server rejects the batch
        """
        files = []
        for item in items:
            try:
                content = item.local_path.read_bytes()
            except OSError as e:
                raise UploadError(f"Cannot read {item.local_path}: {e}") from e
            mime_type, _ = mimetypes.guess_type(item.local_path.name)
            name = item.relative_path or item.remote_locator
            files.append(("file", (name, content, mime_type or "application/octet-stream")))

        self._send(
            "POST",
            f"{self._attachments_endpoint(row.table_id, row.row_id)}/upload",
            error_class=UploadError,
            files=files,
        )
        logger.debug(f"Uploaded {len(items)} attachment(s) of row {row.row_id}")

    def download_batch(self, items: list[TransferItem], row: RowAttachments) -> None:
        """Download a batch of attachments with one request.

        The server answers with a ``multipart/mixed`` body; each part is
        written to the item whose relative path matches the part's file name.

        Args:
            items: Attachments of the batch
            row: Row owning the attachments

        Raises:
            DownloadError: If the response lacks a requested file or a file
                cannot be written
        """
        body = {"files": [{"filename": item.relative_path} for item in items]}
        response = self._send(
            "POST",
            f"{self._attachments_endpoint(row.table_id, row.row_id)}/download",
            error_class=DownloadError,
            json=body,
            headers={"Accept": "multipart/mixed"},
        )

        by_name = {item.relative_path: item for item in items}
        received: set[str] = set()
        content_type = response.headers.get("Content-Type", "")
        for headers, payload in iter_multipart(content_type, response.content):
            filename = headers.get_filename()
            item = by_name.get(filename or "")
            if item is None:
                logger.warning(f"Ignoring unexpected attachment {filename!r} of row {row.row_id}")
                continue
            tmp_path = item.local_path.with_name(f".{item.local_path.name}.part")
            try:
                tmp_path.write_bytes(payload)
                os.replace(tmp_path, item.local_path)
            except OSError as e:
                self._remove_partial(tmp_path)
                raise DownloadError(f"Failed to write {item.local_path}: {e}") from e
            received.add(item.relative_path)

        missing = [name for name in by_name if name not in received]
        if missing:
            raise DownloadError(
                f"Server did not return {', '.join(missing)} for row {row.row_id}"
            )
        logger.debug(f"Downloaded {len(items)} attachment(s) of row {row.row_id}")


def iter_multipart(content_type: str, body: bytes) -> Iterator[tuple[Message, bytes]]:
    """Split a multipart body into its parts.

    Args:
        content_type: Value of the response Content-Type header
        body: Raw response body

    Yields:
        Tuples of (part headers, part body)

    Raises:
        InvalidResponseError: If the response is not multipart
    """
    container = Message()
    container["Content-Type"] = content_type
    boundary = container.get_boundary()
    if not content_type.startswith("multipart/") or not boundary:
        raise InvalidResponseError(f"Expected a multipart response, got {content_type!r}")

    delimiter = b"--" + boundary.encode("ascii")
    parser = BytesHeaderParser()
    # The first segment is the preamble
    for segment in body.split(delimiter)[1:]:
        if segment.startswith(b"--"):
            break
        if segment.startswith(b"\r\n"):
            segment = segment[2:]
        header_bytes, sep, payload = segment.partition(b"\r\n\r\n")
        if not sep:
            raise InvalidResponseError("Malformed multipart part without headers")
        if payload.endswith(b"\r\n"):
            payload = payload[:-2]
        yield parser.parsebytes(header_bytes + b"\r\n\r\n"), payload
