"""Common utilities for tool modules.

This module provides shared infrastructure for the tool modules,
mainly project-root discovery and access to the project config.json.

Usage in tool modules:
    from tool_modules.common import PROJECT_ROOT, load_project_config

    settings = load_project_config().get("meet_relay", {})
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# This file is at: tool_modules/common/__init__.py
# Project root is 2 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

# Also export as string for convenience
PROJECT_ROOT_STR = str(PROJECT_ROOT)

CONFIG_FILE = PROJECT_ROOT / "config.json"


def setup_path() -> None:
    """Add project root to sys.path if not already present."""
    if PROJECT_ROOT_STR not in sys.path:
        sys.path.insert(0, PROJECT_ROOT_STR)


def get_project_root() -> Path:
    """Get the project root directory."""
    return PROJECT_ROOT


def load_project_config(path: Path | None = None) -> dict[str, Any]:
    """Load config.json from the project root (or an explicit path).

    A missing file yields an empty dict. Unreadable or invalid JSON is
    logged and also yields an empty dict so callers fall back to defaults.

    Args:
        path: Alternative config file location (default: PROJECT_ROOT/config.json)

    Returns:
        Parsed config dictionary
    """
    config_file = path or CONFIG_FILE
    if not config_file.exists():
        logger.debug(f"Config file not found: {config_file}")
        return {}

    try:
        with open(config_file) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in {config_file.name}: {e}")
        return {}
    except OSError as e:
        logger.error(f"Failed to read {config_file}: {e}")
        return {}

    if not isinstance(data, dict):
        logger.error(f"{config_file.name} must contain a JSON object, got {type(data).__name__}")
        return {}
    return data


# Auto-setup path on import so tool modules can import siblings
setup_path()
