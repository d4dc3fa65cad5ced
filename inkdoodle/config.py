# inkdoodle/config.py
# Description: Configuration management for the inkdoodle application.
#
# Imports
import copy
import os
import sys
if sys.version_info < (3, 11):
    import tomli as tomllib
else:
    import tomllib
from pathlib import Path
import toml
from typing import Dict, Any, Optional, Union
#
# Third-Party Imports
from loguru import logger
#
#######################################################################################################################
#
# Functions:

# --- Constants ---
CLIENT_ID = "inkdoodle_desktop_v1"

CONFIG_PATH_ENV = "INKDOODLE_CONFIG"
SYNC_ENABLED_ENV = "INKDOODLE_SYNC_ENABLED"

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "inkdoodle" / "config.toml"
DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "inkdoodle"

CONFIG_TOML_CONTENT = """
# Configuration for inkdoodle
# This file is created automatically on first run.

[general]
data_dir = "~/.local/share/inkdoodle"

[sync]
# Process-wide switch; when false the app runs in local-only mode
enabled = true
# Directory holding one sub-directory per project
projects_root = "~/.local/share/inkdoodle/projects"
# Minimum seconds between two automatic sync attempts
min_interval_seconds = 300
# How often the auto-sync loop asks for a sync
check_interval_seconds = 60
# Hard ceiling for one whole sync cycle
timeout_seconds = 600
# Preview every change without writing to the remote store
dry_run = false
# Allow the deletion pass to run when no local projects were found
allow_empty_local_deletion = false
# Delete remote children whose local file is gone
prune_orphaned_children = false

[remote]
db_path = "~/.local/share/inkdoodle/remote.db"
pool_size = 4
busy_timeout_ms = 5000

[logging]
level = "INFO"
log_file = "~/.local/share/inkdoodle/logs/inkdoodle.log"
console = true
"""

try:
    DEFAULT_CONFIG: Dict[str, Any] = tomllib.loads(CONFIG_TOML_CONTENT)
except tomllib.TOMLDecodeError as e:
    logger.critical(f"FATAL: Could not parse internal CONFIG_TOML_CONTENT: {e}")
    DEFAULT_CONFIG = {}


def get_config_path() -> Path:
    """Returns the config file path, honouring the INKDOODLE_CONFIG override."""
    override = os.environ.get(CONFIG_PATH_ENV)
    if override:
        return Path(override).expanduser()
    return DEFAULT_CONFIG_PATH


# --- Helper for deep merging dictionaries ---
def deep_merge_dicts(base: Dict, update: Dict) -> Dict:
    """Recursively merges update_dict into base_dict."""
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def _parse_bool(raw: str) -> Optional[bool]:
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    return None


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    raw = os.environ.get(SYNC_ENABLED_ENV)
    if raw is not None:
        parsed = _parse_bool(raw)
        if parsed is None:
            logger.warning(f"Ignoring unrecognised {SYNC_ENABLED_ENV} value: {raw!r}")
        else:
            config.setdefault("sync", {})["enabled"] = parsed
    return config


# --- Primary Configuration Loading Logic ---
_CONFIG_CACHE: Optional[Dict[str, Any]] = None
_CONFIG_CACHE_PATH: Optional[Path] = None


def load_settings(config_path: Optional[Union[str, Path]] = None, force_reload: bool = False) -> Dict[str, Any]:
    """
    Loads settings from the TOML config file, merged over the built-in defaults.
    If the file doesn't exist, it's created with the default content.
    The result is cached per process; pass force_reload=True to re-read the file.
    """
    global _CONFIG_CACHE, _CONFIG_CACHE_PATH
    path = Path(config_path).expanduser() if config_path else get_config_path()
    if _CONFIG_CACHE is not None and not force_reload and _CONFIG_CACHE_PATH == path:
        return _CONFIG_CACHE

    loaded_config = copy.deepcopy(DEFAULT_CONFIG)

    if not path.exists():
        logger.info(f"Config file not found at {path}. Creating with default values.")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write(CONFIG_TOML_CONTENT)
            logger.info(f"Created default config file at {path}")
        except OSError as e:
            logger.error(f"Could not create default config file {path}: {e}. Using internal defaults.")
    else:
        logger.debug(f"Loading config from: {path}")
        try:
            with open(path, "rb") as f:
                user_config_from_file = tomllib.load(f)
            loaded_config = deep_merge_dicts(loaded_config, user_config_from_file)
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Error decoding TOML config file {path}: {e}. Using internal defaults.")
        except OSError as e:
            logger.error(f"Could not read config file {path}: {e}. Using internal defaults.")

    _CONFIG_CACHE = _apply_env_overrides(loaded_config)
    _CONFIG_CACHE_PATH = path
    return _CONFIG_CACHE


def save_setting_to_cli_config(section: str, key: str, value: Any) -> bool:
    """
    Saves a specific setting to the user's TOML configuration file.

    Nested sections are written with dotted names (e.g. "sync.advanced").
    The config cache is reloaded afterwards.

    Returns:
        True if the setting was saved successfully, False otherwise.
    """
    path = get_config_path()
    logger.info(f"Saving setting: [{section}].{key} = {value!r}")

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Could not create config directory {path.parent}: {e}")
        return False

    config_data: Dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, "rb") as f:
                config_data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Corrupted config file at {path}. Cannot save. Please fix or delete it. Error: {e}")
            return False

    current_level = config_data
    try:
        for part in section.split('.'):
            current_level = current_level.setdefault(part, {})
        current_level[key] = value
    except (TypeError, AttributeError):
        logger.error(f"Could not set '{key}' in section '{section}': a part of the path is not a table.")
        return False

    try:
        with open(path, "w", encoding="utf-8") as f:
            toml.dump(config_data, f)
    except OSError as e:
        logger.error(f"Failed to write updated config to {path}: {e}")
        return False

    load_settings(path, force_reload=True)
    logger.success(f"Saved setting to {path}")
    return True


# --- Setting Getters ---
def get_cli_setting(section: str, key: str, default: Any = None) -> Any:
    """Helper to get a specific setting from the loaded configuration."""
    config = load_settings()
    section_data = config.get(section)
    if isinstance(section_data, dict):
        return section_data.get(key, default)
    return default


def get_projects_root() -> Path:
    return Path(get_cli_setting("sync", "projects_root", str(DEFAULT_DATA_DIR / "projects"))).expanduser()


def get_remote_db_path() -> Path:
    return Path(get_cli_setting("remote", "db_path", str(DEFAULT_DATA_DIR / "remote.db"))).expanduser()


def get_log_file_path() -> Optional[Path]:
    log_file = get_cli_setting("logging", "log_file")
    return Path(log_file).expanduser() if log_file else None


def is_sync_enabled() -> bool:
    return bool(get_cli_setting("sync", "enabled", True))

#
# End of config.py
#######################################################################################################################
