import json
import os
import yaml
import logging
from typing import Any, Dict, Optional

from exchange_simulator.models import (
    AppConfig,
    BroadcastConfig,
    ClockConfig,
    PersistenceConfig,
    ServerConfig,
    StorageConfig,
    UriConfig,
)

logger = logging.getLogger(__name__)


class ConfigFactory:
    """Factory for creating configuration objects from YAML files"""

    @staticmethod
    def load_config(config_path: Optional[str]) -> AppConfig:
        """
        Load configuration from a YAML or JSON file

        Args:
            config_path: Path to the configuration file. ``None`` gives the defaults.

        Returns:
            AppConfig object with the loaded configuration
        """
        if not config_path:
            logger.info("No configuration file given, using defaults")
            return AppConfig()
        try:
            with open(config_path, "r") as f:
                # Determine file type by extension
                if config_path.endswith(".json"):
                    raw_config = json.load(f)
                else:
                    # Default to YAML for .yaml or .yml files
                    raw_config = yaml.safe_load(f)

            # Expand environment variables
            raw_config = ConfigFactory._expand_env_vars(raw_config or {})

            base_path = os.path.dirname(os.path.abspath(config_path))
            return ConfigFactory.create_app_config(raw_config, base_path)
        except Exception as e:
            logger.error(f"Error loading configuration from {config_path}: {e}")
            raise

    @staticmethod
    def _expand_env_vars(config: Any) -> Any:
        """
        Recursively expand environment variables in configuration values.
        Supports ${VAR} and $VAR syntax.
        """
        if isinstance(config, dict):
            return {k: ConfigFactory._expand_env_vars(v) for k, v in config.items()}
        elif isinstance(config, list):
            return [ConfigFactory._expand_env_vars(v) for v in config]
        elif isinstance(config, str):
            return os.path.expandvars(config)
        else:
            return config

    @staticmethod
    def create_app_config(raw_config: Dict[str, Any], base_path: Optional[str] = None) -> AppConfig:
        """
        Create an AppConfig object from a raw configuration dictionary

        Args:
            raw_config: Raw configuration dictionary
            base_path: Directory containing the config file; relative data
                directories are resolved against it

        Returns:
            AppConfig object
        """
        return AppConfig(
            server=ConfigFactory._create_server_config(raw_config.get("server", {})),
            storage=ConfigFactory._create_storage_config(raw_config.get("storage", {}), base_path),
            persistence=PersistenceConfig(**raw_config.get("persistence", {})),
            clock=ClockConfig(**raw_config.get("clock", {})),
            broadcast=BroadcastConfig(**raw_config.get("broadcast", {})),
        )

    @staticmethod
    def _create_server_config(raw_config: Dict[str, Any]) -> ServerConfig:
        uri = raw_config.get("uri", {})
        return ServerConfig(
            uri=UriConfig(
                host=uri.get("host", "localhost"),
                port=int(uri.get("port", 8000)),
            ),
            ping_interval=raw_config.get("ping_interval", 20),
            ping_timeout=raw_config.get("ping_timeout", 20),
            max_in_flight_messages=raw_config.get("max_in_flight_messages", 10),
        )

    @staticmethod
    def _create_storage_config(raw_config: Dict[str, Any], base_path: Optional[str] = None) -> StorageConfig:
        storage = StorageConfig(**raw_config)
        if base_path and not os.path.isabs(storage.data_dir):
            storage.data_dir = os.path.join(base_path, storage.data_dir)
        return storage
