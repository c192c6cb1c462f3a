"""Loader for the sync field configuration (YAML/JSON file plus env overrides)."""

import os
import json
from pathlib import Path
from typing import Dict, Any, Optional, Union

import yaml
from pydantic import ValidationError

from .schema import SyncFieldsConfig
from ..utils.logging import get_logger


class ConfigurationError(Exception):
    """Raised when configuration loading fails."""
    pass


# Comma-separated list overrides, e.g. SYNC_CRITICAL_FIELDS="Client_ID2,Date_Modified"
ENV_LIST_OVERRIDES = {
    "SYNC_CRITICAL_FIELDS": "critical_fields",
    "SYNC_SELECT_FIELDS": "select_fields",
}


class ConfigLoader:
    """Loads and validates SyncFieldsConfig from various sources."""

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    def load_from_file(self, file_path: Union[str, Path]) -> SyncFieldsConfig:
        """Load configuration from a JSON or YAML file.

        Args:
            file_path: Path to configuration file

        Returns:
            Validated SyncFieldsConfig

        Raises:
            ConfigurationError: If the file cannot be read or validated
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise ConfigurationError(f"Configuration file not found: {file_path}")

        self.logger.info("Loading sync field configuration", file_path=str(file_path))

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                if file_path.suffix.lower() in ['.yaml', '.yml']:
                    data = yaml.safe_load(f)
                elif file_path.suffix.lower() == '.json':
                    data = json.load(f)
                else:
                    raise ConfigurationError(f"Unsupported file format: {file_path.suffix}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML format: {e}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON format: {e}")

        return self.load_from_dict(data or {})

    def load_from_dict(self, data: Dict[str, Any]) -> SyncFieldsConfig:
        """Load configuration from a dictionary, applying env overrides."""
        if not isinstance(data, dict):
            raise ConfigurationError("Sync field configuration must be a mapping")

        data = self._apply_env_overrides(dict(data))

        try:
            config = SyncFieldsConfig(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid sync field configuration: {e}")

        self.logger.info(
            "Sync field configuration loaded",
            table_name=config.table_name,
            select_fields=len(config.select_fields),
            critical_fields=config.critical_fields
        )
        return config

    def _apply_env_overrides(self, data: Dict[str, Any]) -> Dict[str, Any]:
        for env_name, key in ENV_LIST_OVERRIDES.items():
            raw = os.getenv(env_name)
            if raw:
                data[key] = [item.strip() for item in raw.split(",") if item.strip()]
                self.logger.debug("Applied environment override", variable=env_name)
        return data


def load_fields_config(
    file_path: Optional[Union[str, Path]] = None,
    table_name: Optional[str] = None
) -> SyncFieldsConfig:
    """Load the field configuration from a file, or the built-in defaults."""
    loader = ConfigLoader()
    if file_path:
        config = loader.load_from_file(file_path)
    else:
        config = loader.load_from_dict({})

    if table_name and table_name != config.table_name:
        config = config.model_copy(update={"table_name": table_name})
    return config
