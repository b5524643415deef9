"""Configuration management for manifestsync."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from .exceptions import ConfigError
from .utils import DEFAULT_CLIENT_VERSION

logger = logging.getLogger(__name__)

DEFAULT_APP_NAME = "default"


class Config:
    """Resolves settings from environment variables and the config file.

    Environment variables take precedence over the config file, which in
    turn overrides the built-in defaults.
    """

    ENV_PREFIX = "MANIFESTSYNC_"

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration.

        Args:
            config_dir: Directory holding ``config.json``. Defaults to
                ~/.config/manifestsync/
        """
        if config_dir is None:
            config_dir = Path.home() / ".config" / "manifestsync"
        self.config_dir = Path(config_dir)
        self._file_values: Optional[dict[str, Any]] = None

    def get_config_path(self) -> Path:
        """Return the path of the JSON config file."""
        return self.config_dir / "config.json"

    def _load_file(self) -> dict[str, Any]:
        if self._file_values is not None:
            return self._file_values

        values: dict[str, Any] = {}
        config_path = self.get_config_path()
        if config_path.exists():
            try:
                with open(config_path, encoding="utf-8") as f:
                    loaded = json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                raise ConfigError(f"Cannot read config file {config_path}: {e}") from e
            if not isinstance(loaded, dict):
                raise ConfigError(f"Config file {config_path} must contain an object")
            values = loaded
        self._file_values = values
        return values

    def _get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        env_value = os.environ.get(f"{self.ENV_PREFIX}{key.upper()}")
        if env_value:
            return env_value
        file_value = self._load_file().get(key)
        if file_value:
            return str(file_value)
        return default

    @property
    def server_url(self) -> Optional[str]:
        """Base URL of the sync server, without trailing slash."""
        url = self._get("server_url")
        return url.rstrip("/") if url else None

    @property
    def api_key(self) -> Optional[str]:
        return self._get("api_key")

    @property
    def app_name(self) -> str:
        return self._get("app_name", DEFAULT_APP_NAME) or DEFAULT_APP_NAME

    @property
    def root(self) -> Path:
        """Directory that contains the application folders."""
        root = self._get("root")
        return Path(root).expanduser() if root else Path.cwd()

    @property
    def client_version(self) -> str:
        return self._get("client_version", DEFAULT_CLIENT_VERSION) or DEFAULT_CLIENT_VERSION

    def is_configured(self) -> bool:
        """Check whether a server URL is available."""
        return bool(self.server_url)

    def save(self, **values: Optional[str]) -> Path:
        """Store values in the config file.

        Keys with a value of None are left unchanged.

        Args:
            **values: Settings to store (``server_url``, ``api_key``,
                ``app_name``, ``root``, ``client_version``)

        Returns:
            Path of the written config file

        Raises:
            ConfigError: If the file cannot be written
        """
        data = dict(self._load_file())
        for key, value in values.items():
            if value is not None:
                data[key] = value

        config_path = self.get_config_path()
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(config_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            # The file may hold an API key
            config_path.chmod(0o600)
        except OSError as e:
            raise ConfigError(f"Cannot write config file {config_path}: {e}") from e

        self._file_values = data
        logger.debug(f"Saved configuration to {config_path}")
        return config_path


config = Config()
