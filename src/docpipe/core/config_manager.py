"""
Configuration loading: YAML file, environment overrides, pydantic validation.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .config_models import DocpipeConfig
from .exceptions import ConfigurationError
from .yaml_parser import YAMLConfigParser

logger = logging.getLogger(__name__)

# Environment variable -> (section, key, converter)
ENV_OVERRIDES = {
    "DOCPIPE_BATCH_SIZE": ("scheduler", "batch_size", int),
    "DOCPIPE_TOKEN_LIMIT": ("admission", "token_limit", int),
    "DOCPIPE_WINDOW_SECONDS": ("admission", "window_seconds", float),
    "DOCPIPE_ANALYSIS_ENDPOINT": ("analysis", "endpoint", str),
    "DOCPIPE_ANALYSIS_API_KEY": ("analysis", "api_key", str),
    "DOCPIPE_LOG_LEVEL": ("logging", "level", str),
}


class ConfigurationManager:
    """Builds a validated ``DocpipeConfig``."""

    def __init__(self) -> None:
        self.yaml_parser = YAMLConfigParser()
        self.current_config: Optional[DocpipeConfig] = None
        self.config_path: Optional[Path] = None

    def load_config(self, config_path: Optional[Path] = None) -> DocpipeConfig:
        """
        Load configuration from ``config_path`` (or ``DOCPIPE_CONFIG_PATH``).

        A missing file yields defaults; environment overrides apply either way.

        Raises:
            ConfigurationError: If the file is malformed or values fail validation
        """
        if config_path is None:
            env_path = os.getenv("DOCPIPE_CONFIG_PATH")
            config_path = Path(env_path).expanduser() if env_path else None

        self.config_path = config_path

        try:
            config_data: Dict[str, Any] = {}
            if config_path is not None and config_path.exists():
                config_data = self.yaml_parser.load_yaml_config(config_path)
            elif config_path is not None:
                logger.info(f"Configuration file not found at {config_path}, using defaults")

            self._apply_environment_overrides(config_data)
            config = DocpipeConfig(**config_data)

        except (ValidationError, ValueError, OSError) as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}") from e

        self.current_config = config
        return config

    def _apply_environment_overrides(self, config_data: Dict[str, Any]) -> None:
        for env_name, (section, key, converter) in ENV_OVERRIDES.items():
            raw_value = os.getenv(env_name)
            if raw_value is None:
                continue

            try:
                value = converter(raw_value)
            except ValueError as e:
                raise ValueError(f"Invalid value for {env_name}: {raw_value!r}") from e

            section_data = config_data.setdefault(section, {})
            if not isinstance(section_data, dict):
                raise ValueError(f"Configuration section '{section}' must be a mapping")
            section_data[key] = value
            logger.debug(f"Applied environment override {env_name}")
