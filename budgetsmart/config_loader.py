"""Configuration loader for BudgetSmart."""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, uses default locations.

    Returns:
        Dictionary with configuration values.
    """
    # Load environment variables first
    load_dotenv()

    if config_path is None:
        env_path = os.getenv("BUDGETSMART_CONFIG")
        locations = [
            env_path,
            "config.yaml",
            "config.yml",
            "../config.yaml",
            "../config.yml",
            "/app/config.yaml",
        ]
        for loc in locations:
            if loc and Path(loc).exists():
                config_path = loc
                break

    if config_path is None or not Path(config_path).exists():
        raise FileNotFoundError("Configuration file not found. Please provide config.yaml")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    return _substitute_env_vars(config)


def _substitute_env_vars(obj: Any) -> Any:
    """Recursively substitute environment variables in config.

    Supports syntax: ${VAR_NAME} or ${VAR_NAME:default_value}
    """
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        return _substitute_env_string(obj)
    else:
        return obj


def _substitute_env_string(value: str) -> str:
    """Substitute environment variables in a string."""
    pattern = r'\$\{([^}]+)\}'

    def replace(match):
        var_expr = match.group(1)
        if ':' in var_expr:
            var_name, default = var_expr.split(':', 1)
            return os.getenv(var_name, default)
        else:
            return os.getenv(var_expr, match.group(0))

    return re.sub(pattern, replace, value)


def _section(config: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = config.get(key, {})
    return value if isinstance(value, dict) else {}


def get_storage_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Get storage configuration."""
    return _section(config, "storage")


def get_ingestion_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Get ingestion (storefront crawling) configuration."""
    return _section(config, "ingestion")


def get_matching_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Get basket matching configuration."""
    return _section(config, "matching")


def get_site_overrides(config: Dict[str, Any], host: Optional[str]) -> Dict[str, List[str]]:
    """Return per-host selector overrides, matching on the bare host name.

    A leading ``www.`` is ignored on both sides so ``shop.example`` and
    ``www.shop.example`` share one entry.
    """
    if not host:
        return {}
    overrides = get_ingestion_config(config).get("site_overrides", {}) or {}
    wanted = host.lower().removeprefix("www.")
    for key, selectors in overrides.items():
        if str(key).lower().removeprefix("www.") == wanted and isinstance(selectors, dict):
            return {
                field: [str(s) for s in (values or [])]
                for field, values in selectors.items()
            }
    return {}


def ensure_directories(config: Dict[str, Any]):
    """Ensure all required directories exist."""
    storage = get_storage_config(config)

    # SQLite directory
    sqlite_path = storage.get("sqlite", {}).get("database_path", "data/budgetsmart.db")
    if sqlite_path != ":memory:":
        Path(sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    uploads_dir = storage.get("uploads_dir", "data/uploads")
    Path(uploads_dir).mkdir(parents=True, exist_ok=True)

    # Log directory
    log_path = config.get("logging", {}).get("file", "data/logs/budgetsmart.log")
    Path(log_path).parent.mkdir(parents=True, exist_ok=True)
