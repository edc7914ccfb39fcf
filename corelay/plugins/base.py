"""Plugin base class and metadata.

Every host component (relay, router, sandbox, ...) inherits from Plugin and
defines a PluginMeta. These are components of the corelay process itself,
not the operator-supplied plugin code that runs inside the sandbox.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class PluginMeta:
    """Plugin metadata - defines identity and capabilities."""

    id: str  # Unique identifier: "relay", "router", "sandbox"
    version: str  # Semver: "1.0.0"
    capabilities: list[str] = field(default_factory=list)  # What it provides: ["relay"]
    dependencies: list[str] = field(
        default_factory=list
    )  # Required plugins: ["config"]
    priority: int = 50  # Load order (lower = earlier)

    def __post_init__(self):
        if not self.id:
            raise ValueError("Plugin id is required")
        if not self.version:
            raise ValueError("Plugin version is required")


class Plugin(ABC):
    """Base class for all host components.

    Plugins must:
    1. Define a `meta` class attribute with PluginMeta
    2. Implement configure(), start(), stop()
    3. Optionally implement hook methods (on_session_open, etc.)
    4. Optionally implement set_registry() to reach other components

    Example:
        class MyPlugin(Plugin):
            meta = PluginMeta(
                id="myplugin",
                version="1.0.0",
                capabilities=["metrics"],
                dependencies=["config"],
                priority=20,
            )

            def configure(self, config: dict) -> None:
                self._config = config.get("myplugin", {})

            async def start(self) -> None:
                pass

            async def stop(self) -> None:
                pass
    """

    meta: PluginMeta  # Must be defined by subclass

    @abstractmethod
    def configure(self, config: dict) -> None:
        """Receive configuration.

        Called before start(). Config is the full corelay.yml dict; each
        plugin reads its own section.

        Args:
            config: Full config dict (may be empty)
        """
        pass

    @abstractmethod
    async def start(self) -> None:
        """Initialize the plugin.

        Called after all plugins are configured, in dependency order.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Clean up plugin resources.

        Called on shutdown, in reverse dependency order.
        """
        pass

    # --- Optional Hook Methods ---
    # Override these to observe relay and capability events

    async def on_session_open(self, ctx: dict) -> dict:
        """Called when a downstream peer opens a session."""
        return ctx

    async def on_upstream_ready(self, ctx: dict) -> dict:
        """Called once the upstream connection is established."""
        return ctx

    async def on_session_closed(self, ctx: dict) -> dict:
        """Called after both peers of a session are closed."""
        return ctx

    async def on_frame_error(self, ctx: dict) -> dict:
        """Called for a non-terminal frame error on either peer."""
        return ctx

    async def on_plugin_changed(self, ctx: dict) -> dict:
        """Called when an operator plugin is added, updated, toggled or removed."""
        return ctx

    async def on_before_tool_exec(self, ctx: dict) -> dict:
        """Called before a capability call is dispatched."""
        return ctx

    async def on_after_tool_exec(self, ctx: dict) -> dict:
        """Called after a capability call produced its result."""
        return ctx

    async def on_error(self, ctx: dict) -> dict:
        """Called when an error occurs."""
        return ctx

    # --- CLI Extension ---

    def register_commands(self, cli) -> None:
        """Register CLI commands.

        Called during CLI initialization. Plugins can add commands/groups
        to the main CLI.

        Args:
            cli: Click group (the main corelay CLI)
        """
        pass


# List of all hook method names
HOOK_METHODS = [
    "on_session_open",
    "on_upstream_ready",
    "on_session_closed",
    "on_frame_error",
    "on_plugin_changed",
    "on_before_tool_exec",
    "on_after_tool_exec",
    "on_error",
]
