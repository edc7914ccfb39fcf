"""Plugin registry - central management of all host components.

The registry handles:
- Plugin registration and validation
- Dependency resolution
- Configuration injection
- Lifecycle management (configure, start, stop)
- Lookup by ID or capability
- Hook execution

Lifecycle methods (start, stop) and hooks are async.
"""

import inspect
import sys
from typing import Optional, Type
from collections import defaultdict

from .base import Plugin, PluginMeta, HOOK_METHODS


class PluginError(Exception):
    """Error during plugin operations."""

    pass


class PluginRegistry:
    """Central registry for plugin management."""

    def __init__(self):
        self._plugins: dict[str, Plugin] = {}  # id -> instance
        self._capabilities: dict[str, list[str]] = defaultdict(
            list
        )  # capability -> [ids]
        self._load_order: list[str] = []  # Ordered list of plugin IDs
        self._started: bool = False

    def register(self, plugin_class: Type[Plugin]) -> Plugin:
        """Validate and register a plugin class.

        Args:
            plugin_class: Plugin class (not instance)

        Returns:
            Plugin instance

        Raises:
            PluginError: If plugin is invalid or already registered
        """
        if not isinstance(plugin_class, type) or not issubclass(plugin_class, Plugin):
            raise PluginError(
                f"Invalid plugin: {plugin_class} is not a Plugin subclass"
            )

        if not hasattr(plugin_class, "meta") or not isinstance(
            plugin_class.meta, PluginMeta
        ):
            raise PluginError(
                f"Plugin {plugin_class.__name__} missing valid 'meta' attribute"
            )

        meta = plugin_class.meta

        if meta.id in self._plugins:
            raise PluginError(f"Plugin '{meta.id}' already registered")

        try:
            instance = plugin_class()
        except Exception as e:
            raise PluginError(f"Failed to instantiate plugin '{meta.id}': {e}")

        self._plugins[meta.id] = instance

        for cap in meta.capabilities:
            self._capabilities[cap].append(meta.id)

        return instance

    def get(self, plugin_id: str) -> Optional[Plugin]:
        """Get plugin by ID."""
        return self._plugins.get(plugin_id)

    def get_by_capability(self, capability: str) -> Optional[Plugin]:
        """Get first plugin providing a capability.

        Args:
            capability: Capability name (e.g., "relay", "sandbox")

        Returns:
            Plugin instance or None
        """
        plugin_ids = self._capabilities.get(capability, [])
        if not plugin_ids:
            return None

        # Registration order; ties go to the first registered provider
        return self._plugins.get(plugin_ids[0])

    def all_with_capability(self, capability: str) -> list[Plugin]:
        """Get all plugins providing a capability."""
        plugin_ids = self._capabilities.get(capability, [])
        return [self._plugins[pid] for pid in plugin_ids if pid in self._plugins]

    def all_plugins(self) -> list[Plugin]:
        """Get all registered plugins in load order.

        Before configure_all() has resolved the order, registration order.
        """
        order = self._load_order or list(self._plugins)
        return [self._plugins[pid] for pid in order]

    def _resolve_load_order(self) -> list[str]:
        """Resolve load order: dependencies first, then by priority."""
        by_priority = sorted(
            self._plugins.keys(), key=lambda pid: self._plugins[pid].meta.priority
        )

        order: list[str] = []
        visiting: set[str] = set()

        def visit(plugin_id: str) -> None:
            if plugin_id in order:
                return
            if plugin_id in visiting:
                raise PluginError(f"Dependency cycle involving '{plugin_id}'")
            visiting.add(plugin_id)
            deps = sorted(
                (d for d in self._plugins[plugin_id].meta.dependencies if d in self._plugins),
                key=lambda pid: self._plugins[pid].meta.priority,
            )
            for dep in deps:
                visit(dep)
            visiting.discard(plugin_id)
            order.append(plugin_id)

        for plugin_id in by_priority:
            visit(plugin_id)
        return order

    def _check_dependencies(self) -> None:
        """Check that all plugin dependencies are satisfied."""
        for plugin_id, plugin in self._plugins.items():
            for dep in plugin.meta.dependencies:
                if dep not in self._plugins:
                    raise PluginError(
                        f"Plugin '{plugin_id}' depends on '{dep}' which is not registered"
                    )

    def configure_all(self, config: dict) -> None:
        """Inject configuration to all plugins.

        Each plugin receives the full config dict and extracts its own
        section. Plugins exposing set_registry() get a reference to this
        registry so they can reach their dependencies.

        Args:
            config: Full configuration dict (from corelay.yml)
        """
        self._check_dependencies()
        self._load_order = self._resolve_load_order()

        for plugin_id in self._load_order:
            plugin = self._plugins[plugin_id]

            try:
                plugin.configure(config)
            except Exception as e:
                print(
                    f"[Registry] Failed to configure '{plugin_id}': {e}",
                    file=sys.stderr,
                )
                raise PluginError(f"Configuration failed for '{plugin_id}': {e}")

            set_registry = getattr(plugin, "set_registry", None)
            if callable(set_registry):
                set_registry(self)

    async def start_all(self) -> None:
        """Start all plugins in dependency order."""
        if self._started:
            return

        for plugin_id in self._load_order:
            plugin = self._plugins[plugin_id]

            try:
                await plugin.start()
                print(f"[Registry] Started '{plugin_id}'", file=sys.stderr)
            except Exception as e:
                print(f"[Registry] Failed to start '{plugin_id}': {e}", file=sys.stderr)
                raise PluginError(f"Start failed for '{plugin_id}': {e}")

        self._started = True

    async def stop_all(self) -> None:
        """Stop all plugins in reverse dependency order."""
        if not self._started:
            return

        for plugin_id in reversed(self._load_order):
            plugin = self._plugins[plugin_id]

            try:
                await plugin.stop()
                print(f"[Registry] Stopped '{plugin_id}'", file=sys.stderr)
            except Exception as e:
                print(f"[Registry] Error stopping '{plugin_id}': {e}", file=sys.stderr)

        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def run_hook(self, hook_name: str, ctx: dict) -> dict:
        """Run a hook on all plugins that implement it.

        Hooks are run in load order. Each plugin can modify the context.
        If a plugin sets ctx["abort"] = True, the chain stops.

        Args:
            hook_name: Name of the hook method
            ctx: Context dict to pass through

        Returns:
            Modified context dict
        """
        if hook_name not in HOOK_METHODS:
            return ctx

        for plugin in self.all_plugins():
            plugin_id = plugin.meta.id
            method = getattr(plugin, hook_name, None)
            if method is None:
                continue

            # Skip hooks inherited unchanged from Plugin
            if getattr(method, "__func__", None) is getattr(Plugin, hook_name, None):
                continue

            try:
                result = method(ctx)
                if inspect.isawaitable(result):
                    result = await result
                if result is not None:
                    ctx = result
                if ctx.get("abort"):
                    break
            except Exception as e:
                print(
                    f"[Registry] Error in {plugin_id}.{hook_name}: {e}", file=sys.stderr
                )
                if hook_name != "on_error":
                    await self.run_hook(
                        "on_error",
                        {
                            "error": e,
                            "hook": hook_name,
                            "plugin": plugin_id,
                        },
                    )

        return ctx

    def list_plugins(self) -> list[dict]:
        """List all registered plugins with metadata."""
        return [
            {
                "id": plugin.meta.id,
                "version": plugin.meta.version,
                "capabilities": plugin.meta.capabilities,
                "dependencies": plugin.meta.dependencies,
                "priority": plugin.meta.priority,
            }
            for plugin in self.all_plugins()
        ]


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (for testing).

    Synchronous for test convenience. If the registry was started, call
    `await registry.stop_all()` first.
    """
    global _registry
    if _registry:
        _registry._started = False
    _registry = None
