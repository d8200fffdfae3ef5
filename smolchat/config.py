# smolchat/config.py
# Description: Configuration management for the smolchat session layer.
#
# Imports
import copy
import sys
if sys.version_info < (3, 11):
    import tomli as tomllib
else:
    import tomllib
from pathlib import Path
from typing import Any, Dict, Optional
#
# Third-Party Imports
import toml
from loguru import logger
#
# Local Imports
from .exceptions import ConfigurationError
#
#######################################################################################################################
#
# Functions:

# --- Path to the configuration file ---
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "smolchat" / "config.toml"
BASE_DATA_DIR = Path.home() / ".local" / "share" / "smolchat"

CONFIG_TOML_CONTENT = """
# Configuration for smolchat
# Located at: ~/.config/smolchat/config.toml
[general]
log_level = "INFO" # DEBUG, INFO, WARNING, ERROR, CRITICAL

[logging]
log_filename = "smolchat.log" # Relative names are placed under the data directory
log_rotation = "10 MB"
log_retention = "7 days"
console_logging = false
truncate_queries_at = 50 # Queries are cut to this many characters in log lines

[database]
chats_db_path = "~/.local/share/smolchat/smolchat_chats.db"

[chat_defaults]
name = "Untitled"
system_prompt = "You are a helpful assistant."
min_p = 0.1
temperature = 0.8
context_size = 2048
is_task = false

[rag]
load_on_startup = true
chunks_path = "~/.local/share/smolchat/rag/chunks.csv"
vectors_path = "~/.local/share/smolchat/rag/embeddings.csv"
embedding_model = "~/.local/share/smolchat/rag/embedding_model"
embedding_tokenizer = ""
reranker_tokenizer = ""
reranker_model = "~/.local/share/smolchat/rag/reranker_model"
# Some embedding models do not take token type ids as input
use_token_type_ids = false
top_k = 8
rerank_top_k = 2

[llama_server]
binary = "llama-server"
host = "127.0.0.1"
port = 8089
startup_timeout = 120.0
request_timeout = 600.0
"""

try:
    DEFAULT_CONFIG_FROM_TOML: Dict[str, Any] = tomllib.loads(CONFIG_TOML_CONTENT)
except tomllib.TOMLDecodeError as e:
    logger.critical(f"Could not parse internal CONFIG_TOML_CONTENT: {e}")
    DEFAULT_CONFIG_FROM_TOML = {}


def deep_merge_dicts(base: Dict, update: Dict) -> Dict:
    """Recursively merges update into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def _get_typed_value(data_dict: Dict, key: str, default: Any, target_type: type = str) -> Any:
    """Helper to get value from dict and cast to type, with logging for type errors."""
    value = data_dict.get(key, default)
    if value is default:
        return value
    if value is None:
        return None

    try:
        if target_type == bool:
            if isinstance(value, bool):
                return value
            return str(value).lower() in ['true', '1', 't', 'y', 'yes']
        if target_type == Path:
            return Path(value).expanduser() if value else default
        return target_type(value)
    except (ValueError, TypeError) as e:
        logger.warning(f"Config key '{key}' has value '{value}' which could not be converted to {target_type}. Using default: '{default}'. Error: {e}")
        return default


# --- Primary Configuration Loading Logic ---
_CONFIG_CACHE: Optional[Dict[str, Any]] = None


def load_cli_config_and_ensure_existence(force_reload: bool = False) -> Dict[str, Any]:
    """
    Loads settings from ~/.config/smolchat/config.toml.

    If the file doesn't exist it is created from CONFIG_TOML_CONTENT. The
    programmatic defaults are always used as the base, and the user's file is
    merged on top of them.
    """
    global _CONFIG_CACHE
    if _CONFIG_CACHE is not None and not force_reload:
        return _CONFIG_CACHE

    loaded_config = copy.deepcopy(DEFAULT_CONFIG_FROM_TOML)

    if not DEFAULT_CONFIG_PATH.exists():
        logger.info(f"Config file not found at {DEFAULT_CONFIG_PATH}. Creating it with default values.")
        try:
            DEFAULT_CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
            with open(DEFAULT_CONFIG_PATH, "w", encoding="utf-8") as f:
                f.write(CONFIG_TOML_CONTENT)
            logger.info(f"Created default config file at {DEFAULT_CONFIG_PATH}")
            loaded_config["_first_run"] = True
        except OSError as e:
            logger.error(f"Could not create default config file {DEFAULT_CONFIG_PATH}: {e}. Using internal defaults.")
    else:
        logger.info(f"Attempting to load config from: {DEFAULT_CONFIG_PATH}")
        try:
            with open(DEFAULT_CONFIG_PATH, "rb") as f:
                user_config_from_file = tomllib.load(f)
            loaded_config = deep_merge_dicts(loaded_config, user_config_from_file)
            logger.info(f"Successfully loaded and merged config from {DEFAULT_CONFIG_PATH}")
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Error decoding TOML config file {DEFAULT_CONFIG_PATH}: {e}. Using internal defaults.")
        except OSError as e:
            logger.error(f"Could not read config file {DEFAULT_CONFIG_PATH}: {e}. Using internal defaults.")

    _CONFIG_CACHE = loaded_config
    logger.debug(f"load_cli_config_and_ensure_existence returning config with top-level keys: {list(loaded_config.keys())}")
    return _CONFIG_CACHE


def save_setting_to_cli_config(section: str, key: str, value: Any) -> bool:
    """
    Saves a single setting to the user's TOML configuration file.

    Nested sections are addressed with dots (e.g. "rag.assets"). The whole
    file is rewritten and the config cache is reloaded afterwards.

    Returns:
        True if the setting was saved, False otherwise.
    """
    logger.info(f"Attempting to save setting: [{section}].{key} = {repr(value)}")

    try:
        DEFAULT_CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Could not create config directory {DEFAULT_CONFIG_PATH.parent}: {e}")
        return False

    config_data: Dict[str, Any] = {}
    if DEFAULT_CONFIG_PATH.exists():
        try:
            with open(DEFAULT_CONFIG_PATH, "rb") as f:
                config_data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Corrupted config file at {DEFAULT_CONFIG_PATH}. Cannot save. Please fix or delete it. Error: {e}")
            return False

    current_level = config_data
    try:
        for part in section.split('.'):
            current_level = current_level.setdefault(part, {})
        current_level[key] = value
    except (TypeError, AttributeError):
        logger.error(
            f"Configuration structure conflict. Could not set '{key}' in section '{section}' "
            f"because a part of the path is not a table."
        )
        return False

    try:
        with open(DEFAULT_CONFIG_PATH, "w", encoding="utf-8") as f:
            toml.dump(config_data, f)
    except OSError as e:
        logger.error(f"Failed to write updated config to {DEFAULT_CONFIG_PATH}: {e}")
        return False

    logger.success(f"Successfully saved setting to {DEFAULT_CONFIG_PATH}")
    load_cli_config_and_ensure_existence(force_reload=True)
    return True


def get_cli_setting(section: str, key: str, default: Any = None) -> Any:
    """Helper to get a specific setting from the loaded configuration."""
    config = load_cli_config_and_ensure_existence()
    section_data = config.get(section)
    if isinstance(section_data, dict):
        return section_data.get(key, default)
    return default


def get_section(section: str, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Returns a config section as a dict, falling back to the built-in defaults."""
    config = config if config is not None else load_cli_config_and_ensure_existence()
    section_data = config.get(section)
    if section_data is None:
        return copy.deepcopy(DEFAULT_CONFIG_FROM_TOML.get(section, {}))
    if not isinstance(section_data, dict):
        raise ConfigurationError(f"Config section '{section}' must be a table, got {type(section_data).__name__}")
    return section_data


def get_data_dir() -> Path:
    """Returns the data directory, creating it if needed."""
    try:
        BASE_DATA_DIR.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning(f"Could not create data directory {BASE_DATA_DIR}: {e}")
    return BASE_DATA_DIR


def get_database_path(config: Optional[Dict[str, Any]] = None) -> Path:
    default_db_path = DEFAULT_CONFIG_FROM_TOML.get("database", {}).get("chats_db_path", str(BASE_DATA_DIR / "smolchat_chats.db"))
    db_path = _get_typed_value(get_section("database", config), "chats_db_path", default_db_path, str)
    return Path(db_path).expanduser().resolve()


def get_log_file_path(config: Optional[Dict[str, Any]] = None) -> Path:
    log_filename = _get_typed_value(get_section("logging", config), "log_filename", "smolchat.log", str)
    log_path = Path(log_filename).expanduser()
    if not log_path.is_absolute():
        log_path = get_data_dir() / log_path
    return log_path

#
# End of config.py
#######################################################################################################################
