"""
Tests for configuration loading.
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from src.bucketsync.config import (
    MB,
    ConfigManager,
    ServerConfig,
    StorageClientFactory,
    StorageConfig,
)
from src.bucketsync.errors import ConfigurationError


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_defaults(self):
        """Test built-in defaults."""
        config = ServerConfig()

        assert config.sync_processing_num == 10
        assert config.multi_upload_thread_num == 10
        assert config.multi_upload_part_size == 10 * MB
        assert config.breakpoint_file_expiration_days == 7

    def test_to_dict(self):
        """Test that to_dict output loads back into an equal config."""
        original = ServerConfig(storage=StorageConfig(region="eu-west-1"), sync_processing_num=3)
        d = original.to_dict()

        assert d["region"] == "eu-west-1"
        assert ConfigManager.create_server_config(d) == original


class TestConfigManager:
    """Tests for ConfigManager."""

    def test_create_server_config_from_dict(self):
        """Test creating ServerConfig from dictionary."""
        config = ConfigManager.create_server_config({
            "region": "eu-west-1",
            "endpoint_url": "http://localhost:9000",
            "sync_processing_num": 4,
            "multi_upload_part_size_mb": "16",
            "multiupload_folder": "/tmp/records",
        })

        assert config.storage.region == "eu-west-1"
        assert config.storage.endpoint_url == "http://localhost:9000"
        assert config.sync_processing_num == 4
        assert config.multi_upload_part_size == 16 * MB
        assert config.multiupload_folder == Path("/tmp/records")

    def test_invalid_integer_rejected(self):
        """Test that non-integer thread counts raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            ConfigManager.create_server_config({"multi_upload_thread_num": "many"})

    def test_zero_threads_rejected(self):
        """Test that thread counts must be positive."""
        with pytest.raises(ConfigurationError):
            ConfigManager.create_server_config({"sync_processing_num": 0})

    def test_env_var_substitution(self, monkeypatch):
        """Test environment variable substitution."""
        monkeypatch.setenv("TEST_ENDPOINT", "http://minio:9000")

        config = ConfigManager.create_server_config({"endpoint_url": "${TEST_ENDPOINT}"})

        assert config.storage.endpoint_url == "http://minio:9000"

    def test_env_var_with_default(self):
        """Test environment variable with default value."""
        config_dict = ConfigManager._substitute_env_vars({"region": "${NONEXISTENT_VAR:us-west-2}"})
        assert config_dict["region"] == "us-west-2"

    def test_yaml_round_trip(self, temp_dir):
        """Test saving and loading a YAML file."""
        path = temp_dir / "config.yaml"
        ConfigManager.save_yaml({"region": "ap-south-1", "sync_processing_num": 3}, path)

        config = ConfigManager.from_config_file(path)

        assert config.storage.region == "ap-south-1"
        assert config.sync_processing_num == 3

    def test_explicit_missing_file_raises(self, temp_dir):
        """Test that a missing explicit config file is an error."""
        with pytest.raises(ConfigurationError):
            ConfigManager.from_config_file(temp_dir / "missing.yaml")

    def test_invalid_yaml_raises(self, temp_dir):
        """Test that malformed YAML is a ConfigurationError."""
        path = temp_dir / "config.yaml"
        path.write_text("region: [unclosed")

        with pytest.raises(ConfigurationError):
            ConfigManager.from_config_file(path)

    def test_default_path_falls_back_to_env(self, temp_dir, monkeypatch):
        """Test that a missing default config uses the environment."""
        monkeypatch.setenv("BUCKETSYNC_REGION", "sa-east-1")
        monkeypatch.setenv("BUCKETSYNC_SYNC_PROCESSING_NUM", "6")
        monkeypatch.setenv("BUCKETSYNC_ACCESS_KEY_ID", "key")
        monkeypatch.setenv("BUCKETSYNC_SECRET_ACCESS_KEY", "secret")

        with patch("src.bucketsync.config.DEFAULT_CONFIG_PATH", temp_dir / "absent.yaml"):
            config = ConfigManager.from_config_file()

        assert config.storage.region == "sa-east-1"
        assert config.sync_processing_num == 6
        assert config.storage.credentials["aws_access_key_id"] == "key"


class TestStorageClientFactory:
    """Tests for StorageClientFactory."""

    @patch("src.bucketsync.config.S3ObjectStorage")
    def test_create_s3_storage(self, mock_s3):
        """Test creating a connected S3 backend."""
        config = StorageConfig(
            region="us-west-2",
            endpoint_url="http://localhost:9000",
            credentials={"aws_access_key_id": "k", "aws_secret_access_key": "s"},
        )

        storage = StorageClientFactory.create(config)

        assert storage is mock_s3.return_value
        mock_s3.assert_called_once_with(
            region="us-west-2",
            endpoint_url="http://localhost:9000",
            aws_access_key_id="k",
            aws_secret_access_key="s",
            aws_session_token=None,
        )
        storage.connect.assert_called_once()
