"""
Configuration loader for the ordersync service.

Loads configuration from YAML files and environment variables with nested
key access.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

DEFAULT_CONFIG_PATH = "config/app.yaml"

# Global configuration cache
_config_cache: dict[str, Any] | None = None


def load_config(config_path: str | None = None) -> dict[str, Any]:
    """Load configuration from YAML file with environment variable support."""
    global _config_cache

    if _config_cache is not None:
        return _config_cache

    load_dotenv()

    config_path = config_path or os.getenv("ORDERSYNC_CONFIG", DEFAULT_CONFIG_PATH)
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file) as f:
        config = yaml.safe_load(f) or {}

    _config_cache = config
    return config


def cfg(key: str, default: Any = None) -> Any:
    """
    Get configuration value using dot notation.

    Args:
        key: Dot-separated key path (e.g., "sync.batch_size")
        default: Default value if key is not found

    Returns:
        Configuration value or default

    Examples:
        cfg("global.timezone", "UTC")
        cfg("sync.page_delay_seconds", 0.1)
    """
    config = load_config()

    if "." not in key:
        return config.get(key, default)

    value = config
    try:
        for k in key.split("."):
            value = value[k]
        return value
    except (KeyError, TypeError):
        return default


def env(key: str, default: str | None = None) -> str | None:
    """Get environment variable with optional default."""
    return os.getenv(key, default)


def get_required_env(key: str) -> str:
    """
    Get required environment variable or raise error.

    Raises:
        ValueError: If environment variable is not set
    """
    value = env(key)
    if not value:
        raise ValueError(f"{key} environment variable is required")
    return value


def get_database_url() -> str:
    """Get database URL from environment."""
    return get_required_env("DATABASE_URL")


def shop_env_key(prefix: str, shop_id: str) -> str:
    """
    Build the per-shop environment variable name.

    Examples:
        >>> shop_env_key("MARKETPLACE_ACCESS_TOKEN", "7495-abc")
        "MARKETPLACE_ACCESS_TOKEN_7495_ABC"
    """
    suffix = "".join(ch if ch.isalnum() else "_" for ch in shop_id).upper()
    return f"{prefix}_{suffix}"


def get_shops() -> list[dict[str, Any]]:
    """Return the configured shops (each with at least shop_id and org_id)."""
    shops = cfg("shops", []) or []
    return [shop for shop in shops if isinstance(shop, dict) and shop.get("shop_id")]


def get_shop_config(shop_id: str) -> dict[str, Any]:
    """Return the configuration block for a shop, empty dict if not configured."""
    for shop in get_shops():
        if str(shop["shop_id"]) == str(shop_id):
            return shop
    return {}


def validate_config() -> None:
    """Validate configuration and required environment variables."""
    errors = []

    try:
        get_database_url()
    except ValueError as e:
        errors.append(str(e))

    for key in ("MARKETPLACE_APP_KEY", "MARKETPLACE_APP_SECRET"):
        if not env(key):
            errors.append(f"{key} environment variable is required")

    for shop in get_shops():
        shop_id = str(shop["shop_id"])
        if not shop.get("org_id"):
            errors.append(f"Shop {shop_id}: org_id is required")
        for prefix in ("MARKETPLACE_ACCESS_TOKEN", "MARKETPLACE_SHOP_CIPHER"):
            key = shop_env_key(prefix, shop_id)
            if not env(key):
                errors.append(f"Shop {shop_id}: {key} environment variable is required")

    if errors:
        raise ValueError(
            "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
        )


def reload_config() -> None:
    """Force reload of configuration cache."""
    global _config_cache
    _config_cache = None
