"""
Configuration system for the storage backend and transfer settings.

Provides:
- YAML-based configuration with ${VAR} / ${VAR:default} substitution
- Credential management
- Transfer defaults (concurrency, part size, breakpoint expiration)
- Environment variable support
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError
from .providers.s3 import S3ObjectStorage
from .storage import ObjectStorage

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".bucketsync"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_MULTIUPLOAD_FOLDER = DEFAULT_CONFIG_DIR / "multiupload_infos"

MB = 1024 * 1024

ENV_VAR_PATTERN = re.compile(r'\$\{([^}]+)\}')


@dataclass
class StorageConfig:
    """Connection settings for the object storage service."""
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    credentials: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "region": self.region,
            "endpoint_url": self.endpoint_url,
            "credentials": self.credentials,
        }


@dataclass
class ServerConfig:
    """All settings a command needs besides its own arguments."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    storage_class: Optional[str] = None
    sync_processing_num: int = 10
    multi_upload_thread_num: int = 10
    multi_upload_part_size_mb: int = 10
    breakpoint_file_expiration_days: int = 7
    multiupload_folder: Path = DEFAULT_MULTIUPLOAD_FOLDER
    retry_attempts: int = 3

    @property
    def multi_upload_part_size(self) -> int:
        """Part size in bytes."""
        return self.multi_upload_part_size_mb * MB

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            **self.storage.to_dict(),
            "storage_class": self.storage_class,
            "sync_processing_num": self.sync_processing_num,
            "multi_upload_thread_num": self.multi_upload_thread_num,
            "multi_upload_part_size_mb": self.multi_upload_part_size_mb,
            "breakpoint_file_expiration_days": self.breakpoint_file_expiration_days,
            "multiupload_folder": str(self.multiupload_folder),
            "retry_attempts": self.retry_attempts,
        }


class StorageClientFactory:
    """Factory for creating storage backends."""

    @staticmethod
    def create(config: StorageConfig) -> ObjectStorage:
        """
        Create a connected storage backend from config.

        Args:
            config: StorageConfig object

        Returns:
            ObjectStorage instance
        """
        creds = config.credentials or {}
        storage = S3ObjectStorage(
            region=config.region or "us-east-1",
            endpoint_url=config.endpoint_url,
            aws_access_key_id=creds.get("aws_access_key_id"),
            aws_secret_access_key=creds.get("aws_secret_access_key"),
            aws_session_token=creds.get("aws_session_token"),
        )
        storage.connect()
        return storage


class ConfigManager:
    """Manages configuration loading and storage."""

    @staticmethod
    def load_yaml(config_path: Path) -> Dict[str, Any]:
        """
        Read a YAML mapping from ``config_path``.

        Raises:
            ConfigurationError: If the file is missing, unreadable or not a mapping
        """
        config_path = Path(config_path).expanduser()
        try:
            with open(config_path, "r") as f:
                config = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")

        if config is None:
            config = {}
        if not isinstance(config, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping of settings")

        logger.debug(f"Loaded {len(config)} settings from {config_path}")
        return config

    @staticmethod
    def save_yaml(config: Dict[str, Any], config_path: Path) -> None:
        """Write settings to ``config_path``, creating parent folders."""
        config_path = Path(config_path).expanduser()
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(config, f, default_flow_style=False, sort_keys=True)
        logger.info(f"Wrote configuration to {config_path}")

    @staticmethod
    def _int_setting(config_dict: Dict[str, Any], name: str, default: int, minimum: int = 1) -> int:
        value = config_dict.get(name)
        if value is None or value == "":
            return default
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"'{name}' must be an integer, got {value!r}")
        if value < minimum:
            raise ConfigurationError(f"'{name}' must be at least {minimum}, got {value}")
        return value

    @staticmethod
    def create_server_config(config_dict: Dict[str, Any]) -> ServerConfig:
        """
        Create ServerConfig from dictionary.

        Args:
            config_dict: Configuration dictionary

        Returns:
            ServerConfig object

        Raises:
            ConfigurationError: If a value is invalid
        """
        config_dict = ConfigManager._substitute_env_vars(config_dict or {})
        defaults = ServerConfig()

        storage = StorageConfig(
            region=config_dict.get("region") or defaults.storage.region,
            endpoint_url=config_dict.get("endpoint_url") or None,
            credentials=config_dict.get("credentials"),
        )

        folder = config_dict.get("multiupload_folder")
        return ServerConfig(
            storage=storage,
            storage_class=config_dict.get("storage_class") or None,
            sync_processing_num=ConfigManager._int_setting(
                config_dict, "sync_processing_num", defaults.sync_processing_num),
            multi_upload_thread_num=ConfigManager._int_setting(
                config_dict, "multi_upload_thread_num", defaults.multi_upload_thread_num),
            multi_upload_part_size_mb=ConfigManager._int_setting(
                config_dict, "multi_upload_part_size_mb", defaults.multi_upload_part_size_mb),
            breakpoint_file_expiration_days=ConfigManager._int_setting(
                config_dict, "breakpoint_file_expiration_days",
                defaults.breakpoint_file_expiration_days, minimum=0),
            multiupload_folder=Path(folder).expanduser() if folder else defaults.multiupload_folder,
            retry_attempts=ConfigManager._int_setting(
                config_dict, "retry_attempts", defaults.retry_attempts, minimum=0),
        )

    @staticmethod
    def _substitute_env_vars(config: Any) -> Any:
        """
        Expand ``${NAME}`` and ``${NAME:default}`` in every string value.

        Unset variables without a default are left as written.
        """
        if isinstance(config, dict):
            return {k: ConfigManager._substitute_env_vars(v) for k, v in config.items()}
        if isinstance(config, list):
            return [ConfigManager._substitute_env_vars(item) for item in config]
        if not isinstance(config, str):
            return config

        def expand(match):
            name, sep, default = match.group(1).partition(':')
            value = os.getenv(name.strip())
            if value is not None:
                return value
            return default.strip() if sep else match.group(0)

        return ENV_VAR_PATTERN.sub(expand, config)

    @staticmethod
    def from_config_file(config_path: Optional[Path] = None) -> ServerConfig:
        """
        Load a ServerConfig from a YAML file.

        The default path is optional: when it does not exist the environment
        and built-in defaults are used. An explicitly given path must exist.
        """
        if config_path is None:
            if not DEFAULT_CONFIG_PATH.exists():
                logger.debug(f"No config at {DEFAULT_CONFIG_PATH}, using environment")
                return ConfigManager.from_env()
            config_path = DEFAULT_CONFIG_PATH

        return ConfigManager.create_server_config(ConfigManager.load_yaml(config_path))

    @staticmethod
    def from_env() -> ServerConfig:
        """
        Create a ServerConfig from environment variables.

        Expected environment variables (all optional):
        - BUCKETSYNC_REGION / BUCKETSYNC_ENDPOINT_URL
        - BUCKETSYNC_ACCESS_KEY_ID / BUCKETSYNC_SECRET_ACCESS_KEY
        - BUCKETSYNC_STORAGE_CLASS
        - BUCKETSYNC_SYNC_PROCESSING_NUM, BUCKETSYNC_MULTI_UPLOAD_THREAD_NUM,
          BUCKETSYNC_MULTI_UPLOAD_PART_SIZE_MB, BUCKETSYNC_BREAKPOINT_EXPIRATION_DAYS
        - BUCKETSYNC_MULTIUPLOAD_FOLDER
        """
        credentials = None
        if os.getenv("BUCKETSYNC_ACCESS_KEY_ID"):
            credentials = {
                "aws_access_key_id": os.getenv("BUCKETSYNC_ACCESS_KEY_ID"),
                "aws_secret_access_key": os.getenv("BUCKETSYNC_SECRET_ACCESS_KEY"),
            }

        config_dict = {
            "region": os.getenv("BUCKETSYNC_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")),
            "endpoint_url": os.getenv("BUCKETSYNC_ENDPOINT_URL"),
            "credentials": credentials,
            "storage_class": os.getenv("BUCKETSYNC_STORAGE_CLASS"),
            "sync_processing_num": os.getenv("BUCKETSYNC_SYNC_PROCESSING_NUM"),
            "multi_upload_thread_num": os.getenv("BUCKETSYNC_MULTI_UPLOAD_THREAD_NUM"),
            "multi_upload_part_size_mb": os.getenv("BUCKETSYNC_MULTI_UPLOAD_PART_SIZE_MB"),
            "breakpoint_file_expiration_days": os.getenv("BUCKETSYNC_BREAKPOINT_EXPIRATION_DAYS"),
            "multiupload_folder": os.getenv("BUCKETSYNC_MULTIUPLOAD_FOLDER"),
        }
        return ConfigManager.create_server_config(config_dict)
