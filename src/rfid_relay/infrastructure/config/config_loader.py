"""
Configuration Loader - Bridge Between JSON Config and AppSettings
================================================================
Loads configuration from a JSON file and maps it onto AppSettings.

Example config/config.json:

    {
        "relay": {"http_port": 3000, "ws_port": 3001},
        "tags": {"auto_register": true},
        "database": {"dsn": "${DATABASE_URL}"},
        "admin": {"api_token": "${RELAY_ADMIN_TOKEN}"},
        "logging": {"level": "DEBUG", "file": "logs/relay.jsonl"}
    }
"""

import json
import os
from pathlib import Path
from typing import Any, Dict

from pydantic import ValidationError

from .settings import (
    AppSettings,
    AdminSettings,
    DatabaseSettings,
    LoggingSettings,
    RelaySettings,
    TagSettings,
)


_SECTIONS = {
    "relay": RelaySettings,
    "tags": TagSettings,
    "database": DatabaseSettings,
    "admin": AdminSettings,
    "logging": LoggingSettings,
}


def _resolve_env_vars(data: Any) -> Any:
    """Replace "${VAR}" string values with the environment value (empty when unset)."""
    if isinstance(data, dict):
        return {k: _resolve_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars(i) for i in data]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        return os.getenv(data[2:-1], "")
    return data


def _merge_section(current: Any, values: Dict[str, Any]) -> Any:
    """Rebuild a settings section with JSON values layered over the current ones."""
    merged = current.model_dump()
    merged.update({k: v for k, v in values.items() if k in merged and v != ""})
    return type(current)(**merged)


def load_app_settings_from_json(config_path: str = "config/config.json") -> AppSettings:
    """
    Load AppSettings from JSON configuration file.

    Environment variables still provide the base values; JSON values win,
    except that a secret already supplied through the environment
    (database dsn, admin token) is never replaced by the file.

    Args:
        config_path: Path to config.json file

    Returns:
        Configured AppSettings instance
    """
    settings = AppSettings()

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"[WARNING] Failed to load JSON config from {config_path}: {e}")
        print("[INFO] Using default AppSettings configuration")
        return settings

    resolved_data = _resolve_env_vars(config_data)

    # Legacy logging shape: {"file": "logs/relay.jsonl"} enables file output in that directory
    logging_config = dict(resolved_data.get("logging") or {})
    if logging_config.get("file"):
        logging_config["log_dir"] = str(Path(logging_config.pop("file")).parent)
        logging_config["file_enabled"] = True
    if isinstance(logging_config.get("level"), str):
        logging_config["level"] = logging_config["level"].upper()
    if logging_config:
        resolved_data["logging"] = logging_config

    for section_name, section_cls in _SECTIONS.items():
        values = resolved_data.get(section_name)
        if not isinstance(values, dict):
            continue

        current = getattr(settings, section_name)
        if section_name == "database" and current.dsn:
            values = {k: v for k, v in values.items() if k != "dsn"}
        if section_name == "admin" and current.api_token:
            values = {k: v for k, v in values.items() if k != "api_token"}

        try:
            setattr(settings, section_name, _merge_section(current, values))
        except ValidationError as e:
            print(f"[WARNING] Invalid '{section_name}' section in {config_path}: {e}")
            print(f"[INFO] Keeping default '{section_name}' settings")

    return settings


def get_settings_from_working_directory() -> AppSettings:
    """
    Load settings from config.json in the current working directory.

    RELAY_CONFIG_FILE, when set, is tried first.

    Returns:
        Configured AppSettings instance
    """
    possible_paths = [
        "config/config.json",
        "../config/config.json",
    ]
    explicit_path = os.getenv("RELAY_CONFIG_FILE")
    if explicit_path:
        possible_paths.insert(0, explicit_path)

    for config_path in possible_paths:
        if Path(config_path).exists():
            return load_app_settings_from_json(config_path)

    return AppSettings()
