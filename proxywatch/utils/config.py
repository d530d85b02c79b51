"""Configuration management module for proxywatch."""

import yaml
import os
from typing import Any, Dict

from ..features.sorting import SORTABLE_COLUMNS, to_column


STREAM_SOURCES = ('websocket', 'jsonl')


class Config:
    """Configuration container class."""

    def __init__(self, config_dict: Dict[str, Any]):
        """Initialize configuration from dictionary."""
        self._config = config_dict

        # Stream settings
        self.stream_source = config_dict['stream']['source']
        self.stream_url = config_dict['stream'].get('url')
        self.stream_token = config_dict['stream'].get('token')
        self.stream_jsonl_path = config_dict['stream'].get('jsonl_path')
        self.stream_buffer_length = config_dict['stream']['buffer_length']
        self.stream_replay_interval_seconds = config_dict['stream'].get('replay_interval_seconds', 0.0)

        # Controller settings
        self.controller_base_url = config_dict['controller']['base_url']
        self.controller_secret = config_dict['controller'].get('secret')
        self.controller_timeout_seconds = config_dict['controller']['timeout_seconds']

        # Connection table settings
        self.keep_closed = config_dict['connections']['keep_closed']
        self.default_sort = config_dict['connections'].get('default_sort')

        # Display
        self.refresh_seconds = config_dict['display']['refresh_seconds']
        self.max_rows = config_dict['display']['max_rows']

        # Dashboard
        self.dashboard_host = config_dict['dashboard']['host']
        self.dashboard_port = config_dict['dashboard']['port']

    def get_raw(self) -> Dict[str, Any]:
        """Get raw configuration dictionary."""
        return self._config


def load_config(path: str) -> Config:
    """
    Load configuration from YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Config object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, 'r') as f:
        config_dict = yaml.safe_load(f)

    validate_config(config_dict)
    return Config(config_dict)


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration structure and values.

    Args:
        config: Configuration dictionary

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(config, dict):
        raise ValueError("Configuration must be a mapping")

    # Check required top-level keys
    required_keys = ['stream', 'controller', 'connections', 'display', 'dashboard']
    for key in required_keys:
        if key not in config:
            raise ValueError(f"Missing required configuration section: {key}")

    # Validate stream section
    stream_required = ['source', 'buffer_length']
    for key in stream_required:
        if key not in config['stream']:
            raise ValueError(f"Missing required stream config: {key}")

    source = config['stream']['source']
    if source not in STREAM_SOURCES:
        raise ValueError(f"stream.source must be one of {', '.join(STREAM_SOURCES)}")

    if source == 'websocket' and not config['stream'].get('url'):
        raise ValueError("stream.url is required for the websocket source")

    if source == 'jsonl' and not config['stream'].get('jsonl_path'):
        raise ValueError("stream.jsonl_path is required for the jsonl source")

    if config['stream']['buffer_length'] <= 0:
        raise ValueError("buffer_length must be positive")

    if config['stream'].get('replay_interval_seconds', 0) < 0:
        raise ValueError("replay_interval_seconds must be non-negative")

    # Validate controller section
    controller_required = ['base_url', 'timeout_seconds']
    for key in controller_required:
        if key not in config['controller']:
            raise ValueError(f"Missing required controller config: {key}")

    if config['controller']['timeout_seconds'] <= 0:
        raise ValueError("timeout_seconds must be positive")

    # Validate connections section
    if 'keep_closed' not in config['connections']:
        raise ValueError("Missing required connections config: keep_closed")

    if not isinstance(config['connections']['keep_closed'], bool):
        raise ValueError("connections.keep_closed must be a boolean")

    default_sort = config['connections'].get('default_sort')
    if default_sort is not None and to_column(default_sort) not in SORTABLE_COLUMNS:
        raise ValueError(f"connections.default_sort is not a sortable column: {default_sort}")

    # Validate display section
    display_required = ['refresh_seconds', 'max_rows']
    for key in display_required:
        if key not in config['display']:
            raise ValueError(f"Missing required display config: {key}")

    if config['display']['refresh_seconds'] <= 0:
        raise ValueError("refresh_seconds must be positive")

    if config['display']['max_rows'] <= 0:
        raise ValueError("max_rows must be positive")

    # Validate dashboard section
    dashboard_required = ['host', 'port']
    for key in dashboard_required:
        if key not in config['dashboard']:
            raise ValueError(f"Missing required dashboard config: {key}")
