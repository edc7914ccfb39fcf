"""Plugin system for corelay.

This module provides:
- Plugin base class and metadata (base.py)
- Capability interfaces (interfaces.py)
- Plugin registry (registry.py)

Host components are discovered from the plugins directory. Each component
directory must contain a plugin.py with a create_plugin() factory function.
"""

import importlib
import sys
from pathlib import Path

from .base import Plugin, PluginMeta, HOOK_METHODS
from .interfaces import (
    Capability,
    CapabilityCall,
    CapabilityError,
    CapabilityResult,
    CorelayError,
    DuplicateCapability,
    ExecutionError,
    FrameError,
    FunctionCapability,
    Peer,
    PeerClosed,
    PluginNotFound,
    PluginStateError,
    QueueOverflow,
    RelayConnectionError,
    RelayError,
    SandboxProvider,
    UnknownCapability,
    ValidationResult,
)
from .registry import (
    PluginRegistry,
    PluginError,
    get_registry,
    reset_registry,
)

PLUGINS_DIR = Path(__file__).parent

# Always loaded, even when plugins.enabled narrows the set
CORE_PLUGINS = ["config", "logger"]


def discover_plugins() -> list[type[Plugin]]:
    """Discover the bundled host components.

    Each subdirectory with a plugin.py containing create_plugin() is
    imported under its package name so classes stay identical to normal
    imports.

    Returns:
        List of plugin classes
    """
    plugin_classes = []

    for path in sorted(PLUGINS_DIR.iterdir()):
        if not path.is_dir():
            continue
        if path.name.startswith("_"):
            continue

        plugin_file = path / "plugin.py"
        if not plugin_file.exists():
            continue

        try:
            module = importlib.import_module(f"{__name__}.{path.name}.plugin")

            create_plugin = getattr(module, "create_plugin", None)
            if create_plugin is None:
                print(
                    f"[Plugins] Warning: {path.name}/plugin.py has no create_plugin()",
                    file=sys.stderr,
                )
                continue

            instance = create_plugin()
            plugin_classes.append(type(instance))

        except Exception as e:
            print(f"[Plugins] Failed to load {path.name}: {e}", file=sys.stderr)

    return plugin_classes


def load_external_plugins(packages: list[str]) -> list[type]:
    """Load plugins from installed packages.

    Args:
        packages: List of package names (e.g., ["corelay_metrics"])

    Returns:
        List of plugin classes
    """
    plugin_classes = []

    for package_name in packages:
        try:
            module = importlib.import_module(package_name)

            create_plugin = getattr(module, "create_plugin", None)

            if create_plugin is None:
                try:
                    plugin_module = importlib.import_module(f"{package_name}.plugin")
                    create_plugin = getattr(plugin_module, "create_plugin", None)
                except ImportError:
                    pass

            if create_plugin:
                instance = create_plugin()
                plugin_classes.append(type(instance))
                print(f"[Plugins] Loaded external: {package_name}", file=sys.stderr)
            else:
                print(
                    f"[Plugins] Warning: {package_name} has no create_plugin()",
                    file=sys.stderr,
                )

        except ImportError as e:
            print(f"[Plugins] Failed to load {package_name}: {e}", file=sys.stderr)

    return plugin_classes


def load_plugins(
    config: dict = None,
    registry: PluginRegistry = None,
) -> PluginRegistry:
    """Discover, filter, register and configure plugins. Does not start them.

    Args:
        config: Full configuration dict (from corelay.yml)
        registry: Registry to fill (defaults to the global one)

    Returns:
        Configured PluginRegistry
    """
    config = config or {}

    plugins_config = config.get("plugins", {}) or {}
    enabled_list = plugins_config.get("enabled", [])
    disabled_list = plugins_config.get("disabled", [])
    external_packages = plugins_config.get("external", [])

    registry = registry if registry is not None else get_registry()

    plugin_classes = discover_plugins()

    if external_packages:
        plugin_classes.extend(load_external_plugins(external_packages))

    for plugin_class in plugin_classes:
        plugin_id = plugin_class.meta.id

        if plugin_id in disabled_list:
            print(f"[Plugins] Skipping disabled plugin: {plugin_id}", file=sys.stderr)
            continue

        if enabled_list and plugin_id not in enabled_list:
            if plugin_id not in CORE_PLUGINS:
                print(
                    f"[Plugins] Skipping non-enabled plugin: {plugin_id}",
                    file=sys.stderr,
                )
                continue

        try:
            registry.register(plugin_class)
        except PluginError as e:
            print(f"[Plugins] Failed to register: {e}", file=sys.stderr)

    registry.configure_all(config)
    return registry


__all__ = [
    # Base
    "Plugin",
    "PluginMeta",
    "HOOK_METHODS",
    # Interfaces
    "Capability",
    "CapabilityCall",
    "CapabilityError",
    "CapabilityResult",
    "CorelayError",
    "DuplicateCapability",
    "ExecutionError",
    "FrameError",
    "FunctionCapability",
    "Peer",
    "PeerClosed",
    "PluginNotFound",
    "PluginStateError",
    "QueueOverflow",
    "RelayConnectionError",
    "RelayError",
    "SandboxProvider",
    "UnknownCapability",
    "ValidationResult",
    # Registry
    "PluginRegistry",
    "PluginError",
    "get_registry",
    "reset_registry",
    # Functions
    "discover_plugins",
    "load_plugins",
]
