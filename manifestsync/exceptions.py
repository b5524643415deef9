"""Exception hierarchy for manifestsync."""


class ManifestSyncError(Exception):
    """Base class for all manifestsync errors."""


class LocalFileError(ManifestSyncError):
    """A file in the application folder could not be read."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


class ConfigError(ManifestSyncError):
    """Configuration is missing or invalid."""


class StateStoreError(ManifestSyncError):
    """The ETag / file tag store could not be read or written."""


# =============================================================================
# Manifest data errors: fatal to the current scope, never retried
# =============================================================================


class ManifestDataError(ManifestSyncError):
    """The server sent an incomplete or malformed manifest."""

    def __init__(self, message: str, relative_path: str = ""):
        super().__init__(message)
        self.relative_path = relative_path


class IncompleteRemoteBodyError(ManifestDataError):
    """A manifest entry is a placeholder whose file body is missing."""


class MalformedManifestError(ManifestDataError):
    """A manifest entry lacks a file name or a usable download locator."""


# =============================================================================
# Transport errors: propagated unchanged to the caller
# =============================================================================


class TransportError(ManifestSyncError):
    """Network or server-side failure while talking to the sync server."""


class NetworkError(TransportError):
    """Connection could not be established or was interrupted."""


class AuthenticationError(TransportError):
    """Credentials were rejected."""


class PermissionDeniedError(TransportError):
    """The server refused access to the resource."""


class NotFoundError(TransportError):
    """The resource does not exist on the server."""


class RateLimitError(TransportError):
    """Too many requests."""


class InvalidResponseError(TransportError):
    """The server answered with something that could not be understood."""


class UploadError(TransportError):
    """A file or batch could not be uploaded."""


class DownloadError(TransportError):
    """A file or batch could not be downloaded."""
