"""Config plugin exports."""

from .plugin import (
    CorelayConfig,
    ConfigPlugin,
    DEFAULT_UPSTREAM_URL,
    config_paths,
    create_plugin,
    _expand_env_vars,
)

# Short alias
Config = CorelayConfig


def load_config() -> CorelayConfig:
    """Load config using the plugin."""
    plugin = create_plugin()
    plugin.configure({})
    return plugin.get_config()


def get_config() -> CorelayConfig:
    """Get config (alias for load_config)."""
    return load_config()


__all__ = [
    "CorelayConfig",
    "Config",
    "ConfigPlugin",
    "DEFAULT_UPSTREAM_URL",
    "config_paths",
    "create_plugin",
    "load_config",
    "get_config",
]
