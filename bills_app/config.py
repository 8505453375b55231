# bills_app/config.py
# Description: Configuration management for the bills_app application.
#
# Imports
import copy
import os
import tomllib
from pathlib import Path
from typing import Dict, Any, Optional
#
# Third-Party Imports
import toml
from loguru import logger
#
# Local Imports
from bills_app.Constants import DEFAULT_BUCKET
#
#######################################################################################################################
#
# Functions:

# --- Path to the application's configuration file ---
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "bills_app" / "config.toml"
CONFIG_PATH_ENV_VAR = "BILLS_APP_CONFIG_PATH"

BASE_DATA_DIR = Path.home() / ".local" / "share" / "bills_app"

CONFIG_TOML_CONTENT = f"""
# Configuration for bills_app
# This file is created automatically with defaults if it does not exist.

[general]
log_level = "INFO"

[database]
db_path = "{(BASE_DATA_DIR / 'bills_app.db').as_posix()}"

[logging]
log_filename = "bills_app.log"
file_log_level = "INFO"
log_max_bytes = 10485760
log_backup_count = 5

[sync]
# Storage bucket that holds bills/, expenses/ and config/
bucket = "{DEFAULT_BUCKET}"
# Concurrent file transfers within one reconciliation pass
file_workers = 4
# Page size used when listing remote storage prefixes
remote_list_limit = 1000
# Database schema the realtime channels listen on
realtime_schema = "public"
"""

try:
    DEFAULT_CONFIG_FROM_TOML: Dict[str, Any] = tomllib.loads(CONFIG_TOML_CONTENT)
except tomllib.TOMLDecodeError as e:
    logger.critical(f"FATAL: Could not parse internal CONFIG_TOML_CONTENT: {e}.")
    DEFAULT_CONFIG_FROM_TOML = {}


def get_config_path() -> Path:
    """Returns the config file path, honouring the BILLS_APP_CONFIG_PATH override."""
    override = os.environ.get(CONFIG_PATH_ENV_VAR)
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


# --- Primary Configuration Loading Logic ---
_CONFIG_CACHE: Optional[Dict[str, Any]] = None


def load_settings(force_reload: bool = False) -> Dict[str, Any]:
    """
    Loads settings from the TOML config file.
    If the file doesn't exist, it's created with default values.
    """
    global _CONFIG_CACHE
    if _CONFIG_CACHE is not None and not force_reload:
        return _CONFIG_CACHE

    loaded_config = copy.deepcopy(DEFAULT_CONFIG_FROM_TOML)
    config_path = get_config_path()

    if not config_path.exists():
        logger.info(f"Config file not found at {config_path}. Creating with default values.")
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(config_path, "w", encoding="utf-8") as f:
                f.write(CONFIG_TOML_CONTENT)
            logger.info(f"Created default config file at {config_path}")
        except OSError as e:
            logger.error(f"Could not create default config file {config_path}: {e}. Using internal defaults.")
    else:
        logger.info(f"Attempting to load config from: {config_path}")
        try:
            with open(config_path, "rb") as f:
                user_config_from_file = tomllib.load(f)
            loaded_config = deep_merge_dicts(loaded_config, user_config_from_file)
            logger.info(f"Successfully loaded and merged config from {config_path}")
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Error decoding TOML config file {config_path}: {e}. Using internal defaults.")
        except OSError as e:
            logger.error(f"Could not read config file {config_path}: {e}. Using internal defaults.")

    _CONFIG_CACHE = loaded_config
    logger.debug(f"load_settings returning config with top-level keys: {list(loaded_config.keys())}")
    return _CONFIG_CACHE


def save_settings(new_settings: Dict[str, Any]) -> None:
    """Merges new_settings into the config file on disk and refreshes the cache."""
    global _CONFIG_CACHE
    merged = deep_merge_dicts(load_settings(), new_settings)
    config_path = get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        toml.dump(merged, f)
    logger.info(f"Saved config to {config_path}")
    _CONFIG_CACHE = merged


# --- Setting Getters ---
def get_cli_setting(section: str, key: str, default: Any = None) -> Any:
    """Helper to get a specific setting from the loaded configuration."""
    config = load_settings()
    section_data = config.get(section)
    if isinstance(section_data, dict):
        return section_data.get(key, default)
    return default


def get_sync_setting(key: str, default: Any = None) -> Any:
    fallback = DEFAULT_CONFIG_FROM_TOML.get("sync", {}).get(key, default)
    return get_cli_setting("sync", key, fallback)


def get_db_path() -> Path:
    default_db_path_str = DEFAULT_CONFIG_FROM_TOML.get("database", {}).get("db_path", str(BASE_DATA_DIR / "bills_app.db"))
    db_path_str = get_cli_setting("database", "db_path", default_db_path_str)
    return Path(db_path_str).expanduser().resolve()


def get_log_file_path() -> Path:
    default_log_filename = DEFAULT_CONFIG_FROM_TOML.get("logging", {}).get("log_filename", "bills_app.log")
    log_filename = get_cli_setting("logging", "log_filename", default_log_filename)
    log_file_path = get_db_path().parent / log_filename
    try:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Could not create log directory {log_file_path.parent}: {e}")
    return log_file_path

#
# End of bills_app/config.py
#######################################################################################################################
