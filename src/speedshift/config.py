import os
from pathlib import Path
from typing import Any, Dict

import yaml

from .models import SpeedShiftConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "SPEEDSHIFT_STORAGE_DIR": "storage.directory",
    "SPEEDSHIFT_LOG_LEVEL": "server.log_level",
    "SPEEDSHIFT_FFMPEG_PATH": "encoding.ffmpeg_path",
}


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def set_dotted(data: Dict, path: str, value: Any) -> Dict:
    """Set ``data["a"]["b"] = value`` for ``path == "a.b"``, creating levels."""
    keys = path.split(".")
    node = data
    for key in keys[:-1]:
        node = node.setdefault(key, {})
    node[keys[-1]] = value
    return data


def env_overrides(environ=None) -> Dict[str, Any]:
    """Collect config overrides from SPEEDSHIFT_* environment variables."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, path in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            set_dotted(overrides, path, value)
    return overrides


def resolve_config(overrides: Dict[str, Any] = None) -> SpeedShiftConfig:
    """
    Resolve config: Default < Local < Environment < explicit overrides.

    ``overrides`` may be nested or use dotted keys ("storage.directory").
    Raises pydantic.ValidationError on invalid values.
    """
    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, env_overrides())

    nested: Dict[str, Any] = {}
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if "." in key:
            set_dotted(nested, key, value)
        else:
            nested[key] = value
    config_data = merge_dicts(config_data, nested)

    return SpeedShiftConfig.from_dict(config_data)
