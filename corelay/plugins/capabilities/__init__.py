"""Capability registry exports."""

from .plugin import CapabilitiesPlugin, create_plugin
from .storage import PluginRegistration, PluginStore, generate_id

__all__ = [
    "CapabilitiesPlugin",
    "PluginRegistration",
    "PluginStore",
    "create_plugin",
    "generate_id",
]
