"""Tests for configuration management."""

import json
from pathlib import Path

import pytest

from manifestsync.config import DEFAULT_APP_NAME, Config
from manifestsync.exceptions import ConfigError

ENV_VARS = (
    "MANIFESTSYNC_SERVER_URL",
    "MANIFESTSYNC_API_KEY",
    "MANIFESTSYNC_APP_NAME",
    "MANIFESTSYNC_ROOT",
    "MANIFESTSYNC_CLIENT_VERSION",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove manifestsync environment variables."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestConfig:
    """Tests for Config."""

    def test_defaults(self, tmp_path, clean_env):
        """Test the values of an empty configuration."""
        config = Config(config_dir=tmp_path)

        assert config.server_url is None
        assert config.api_key is None
        assert config.app_name == DEFAULT_APP_NAME
        assert config.client_version == "2"
        assert config.root == Path.cwd()
        assert not config.is_configured()

    def test_file_values(self, tmp_path, clean_env):
        """Test that values are read from the config file."""
        (tmp_path / "config.json").write_text(
            json.dumps({"server_url": "https://sync.example.org/", "app_name": "survey"})
        )
        config = Config(config_dir=tmp_path)

        assert config.server_url == "https://sync.example.org"
        assert config.app_name == "survey"
        assert config.is_configured()

    def test_environment_overrides_file(self, tmp_path, clean_env):
        """Test that environment variables take precedence."""
        (tmp_path / "config.json").write_text(json.dumps({"app_name": "survey"}))
        clean_env.setenv("MANIFESTSYNC_APP_NAME", "census")
        clean_env.setenv("MANIFESTSYNC_ROOT", str(tmp_path / "odk"))

        config = Config(config_dir=tmp_path)

        assert config.app_name == "census"
        assert config.root == tmp_path / "odk"

    def test_save_merges_values(self, tmp_path, clean_env):
        """Test that save keeps existing keys and skips None values."""
        config = Config(config_dir=tmp_path / "conf")
        config.save(server_url="https://a.example.org", app_name="survey")

        path = config.save(app_name="census", api_key=None)

        data = json.loads(path.read_text())
        assert data == {"server_url": "https://a.example.org", "app_name": "census"}
        assert path == config.get_config_path()
        assert Config(config_dir=tmp_path / "conf").app_name == "census"

    def test_invalid_file_raises(self, tmp_path, clean_env):
        """Test that a broken config file raises ConfigError."""
        (tmp_path / "config.json").write_text("[1, 2")
        config = Config(config_dir=tmp_path)

        with pytest.raises(ConfigError):
            config.server_url

    def test_non_object_file_raises(self, tmp_path, clean_env):
        """Test that the config file must contain an object."""
        (tmp_path / "config.json").write_text("[]")

        with pytest.raises(ConfigError):
            Config(config_dir=tmp_path).app_name
