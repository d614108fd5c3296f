"""
Configuration Management Module

This module provides a centralized way to load and access configuration settings
from the config.yaml file. It uses the Singleton pattern to ensure only one
configuration instance exists throughout the application.

Usage:
    from biocapture.config import get_config
    config = get_config()
    pipeline_config = config["pipeline"]
"""

import logging
import yaml
from pathlib import Path
from typing import Any, Dict, Optional


# Store the singleton instance (module-level variable)
_config_instance: Optional[Dict[str, Any]] = None

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_project_root() -> Path:
    """
    Find the project root directory.

    The project root is identified by the presence of config.yaml file.
    This function walks up the directory tree from this file's location
    until it finds config.yaml.

    Returns:
        Path: The absolute path to the project root directory.

    Raises:
        FileNotFoundError: If config.yaml cannot be found in any parent directory.
    """
    current_dir = Path(__file__).resolve().parent

    while current_dir != current_dir.parent:
        config_path = current_dir / "config.yaml"
        if config_path.exists():
            return current_dir
        current_dir = current_dir.parent

    raise FileNotFoundError(
        "Could not find config.yaml in any parent directory. "
        "Make sure you're running from within the project directory."
    )


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Optional path to the config file.
                     If not provided, uses the default config.yaml in project root.

    Returns:
        Dict containing all configuration values.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the config file contains invalid YAML.
    """
    if config_path is None:
        config_path = get_project_root() / "config.yaml"
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f)

    return config or {}


def get_config(reload: bool = False) -> Dict[str, Any]:
    """
    Get the configuration singleton.

    Args:
        reload: If True, forces reloading the configuration from disk.

    Returns:
        Dict containing all configuration values.

    Example:
        config = get_config()
        required = config["pipeline"]["required_count"]
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = load_config()

    return _config_instance


def get_section(section_name: str) -> Dict[str, Any]:
    """
    Get a specific section from the configuration.

    Args:
        section_name: Name of the configuration section
                      (e.g., "capture", "pipeline", "geometry")

    Returns:
        Dict containing the section's configuration values.

    Raises:
        KeyError: If the section doesn't exist in the configuration.
    """
    config = get_config()

    if section_name not in config:
        raise KeyError(
            f"Configuration section '{section_name}' not found. "
            f"Available sections: {list(config.keys())}"
        )

    return config[section_name]


def get_section_or_default(section_name: str) -> Dict[str, Any]:
    """
    Like get_section(), but returns an empty dict when no config file
    or section is available so components fall back to their defaults.
    """
    try:
        return get_section(section_name)
    except (FileNotFoundError, KeyError) as e:
        logging.getLogger(__name__).debug(f"Using defaults for '{section_name}': {e}")
        return {}


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging for scripts.

    Args:
        level: Log level name. If None, read from the "logging" section
               (defaults to INFO).
    """
    if level is None:
        level = get_section_or_default("logging").get("level", "INFO")

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )


if __name__ == "__main__":
    print("Testing configuration loader...")

    config = get_config()
    print(f"Successfully loaded config with sections: {list(config.keys())}")

    pipeline_config = get_section("pipeline")
    print(f"Required frames: {pipeline_config['required_count']}")
    print(f"Buffer size: {pipeline_config['max_buffer_size']}")
