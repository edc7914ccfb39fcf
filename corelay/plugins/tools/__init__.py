"""Built-in capabilities."""

from .plugin import (
    BUILTIN_TOOLS,
    GoogleSearchCapability,
    ToolsPlugin,
    WeatherCapability,
    create_plugin,
)

__all__ = [
    "BUILTIN_TOOLS",
    "GoogleSearchCapability",
    "ToolsPlugin",
    "WeatherCapability",
    "create_plugin",
]
