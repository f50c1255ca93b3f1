"""
Configuration for the Clearance Engine.

Configuration is a plain dictionary merged over DEFAULT_CONFIG. It can be
loaded from a JSON or YAML file.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CLEARANCE_ENGINE_CONFIG"

DEFAULT_CONFIG: Dict[str, Any] = {
    # JSON file holding requests and steps; None keeps state in memory
    "state_file": "data/clearance_state.json",
    # Directory for daily activity logs
    "audit_dir": "audit",
    # Step catalog; None uses the bundled workflow.yaml
    "workflow_file": None,
    # Log every engine event through the logging sink
    "log_notifications": True,
}


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load configuration from file or use defaults.

    Args:
        config_path: JSON (.json) or YAML (.yaml/.yml) file

    Returns:
        Configuration dictionary
    """
    config = dict(DEFAULT_CONFIG)

    if not config_path:
        return config

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, encoding="utf-8") as f:
        if path.suffix.lower() in (".yaml", ".yml"):
            file_config = yaml.safe_load(f) or {}
        else:
            file_config = json.load(f)

    if not isinstance(file_config, dict):
        raise ValueError(f"Configuration in {path} must be a mapping")

    config.update(file_config)
    logger.info(f"Loaded configuration from {path}")
    return config
