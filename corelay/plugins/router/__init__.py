"""Capability router."""

from .plugin import RouterPlugin, create_plugin

__all__ = ["RouterPlugin", "create_plugin"]
