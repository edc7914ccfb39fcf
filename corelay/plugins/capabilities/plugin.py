"""Capabilities plugin - registry of built-in capabilities and plugin code.

Priority: 40 (after sandbox and tools)
Capability: capabilities

Holds two kinds of capabilities:
- built-ins, registered by the host (the tools component, or directly)
- plugin registrations, operator-supplied code run through the sandbox

One instance is shared by every relay session. Writes are serialised by a
lock; reads return snapshots taken under the same lock, so a dispatch that
is already iterating never sees a half-applied change.
"""

import asyncio
import dataclasses
import sys
import threading
from pathlib import Path
from typing import Optional

from ..base import Plugin, PluginMeta
from ..interfaces import (
    Capability,
    DuplicateCapability,
    PluginNotFound,
    PluginStateError,
    SandboxProvider,
    ValidationResult,
)
from ..sandbox.plugin import validate_code
from .storage import PluginRegistration, PluginStore, generate_id


class CapabilitiesPlugin(Plugin):
    """Capability registry."""

    meta = PluginMeta(
        id="capabilities",
        version="1.0.0",
        capabilities=["capabilities"],
        dependencies=["config"],
        priority=40,
    )

    def __init__(self):
        self._lock = threading.Lock()
        self._builtins: dict[str, Capability] = {}  # name -> capability
        self._aliases: dict[str, str] = {}  # alias -> name
        self._plugins: dict[str, PluginRegistration] = {}  # id -> registration
        self._store: Optional[PluginStore] = None
        self._registry = None

    def configure(self, config: dict) -> None:
        caps_config = config.get("capabilities", {}) or {}
        store_path = caps_config.get("store_path")
        if store_path:
            self._store = PluginStore(Path(store_path).expanduser())

    def set_registry(self, registry) -> None:
        self._registry = registry

    async def start(self) -> None:
        """Register built-ins and restore stored registrations."""
        if self._registry is not None:
            for provider in self._registry.all_with_capability("builtin_tools"):
                for capability in provider.get_capabilities():
                    if capability.name not in self._builtins:
                        self.register(capability)

        if self._store is not None:
            restored = self._store.load()
            with self._lock:
                for registration in restored:
                    self._plugins.setdefault(registration.id, registration)
            if restored:
                print(
                    f"[Capabilities] Restored {len(restored)} plugin(s) from "
                    f"{self._store.path} (disabled, code not stored)",
                    file=sys.stderr,
                )

        print(
            f"[Capabilities] {len(self._builtins)} built-in(s), "
            f"{len(self._plugins)} plugin(s)",
            file=sys.stderr,
        )

    async def stop(self) -> None:
        self._save()

    # --- Sandbox ---

    @property
    def sandbox(self) -> Optional[SandboxProvider]:
        if self._registry is None:
            return None
        return self._registry.get_by_capability("sandbox")

    def validate(self, code: str) -> ValidationResult:
        """Syntax-only check of plugin code."""
        sandbox = self.sandbox
        if sandbox is not None:
            return sandbox.validate(code)
        return validate_code(code)

    # --- Built-ins ---

    def register(self, capability: Capability, name: Optional[str] = None) -> None:
        """Register a built-in capability under its name and aliases.

        Raises:
            DuplicateCapability: If any of the names is already taken
        """
        name = name or capability.name
        if not name:
            raise ValueError("Capability needs a name")

        with self._lock:
            names = [name, *capability.aliases]
            for candidate in names:
                if candidate in self._builtins or candidate in self._aliases:
                    raise DuplicateCapability(
                        f"Tool {candidate} is already registered"
                    )
            self._builtins[name] = capability
            for alias in capability.aliases:
                self._aliases[alias] = name

        print(f"[Capabilities] Registered built-in '{name}'", file=sys.stderr)

    def get_builtin(self, name: str) -> Optional[Capability]:
        """Look up a built-in by name or alias."""
        with self._lock:
            name = self._aliases.get(name, name)
            return self._builtins.get(name)

    def builtins(self) -> list[Capability]:
        """Built-ins in registration order."""
        with self._lock:
            return list(self._builtins.values())

    def builtin_names(self) -> set[str]:
        """Every name a built-in answers to, including its declared names."""
        with self._lock:
            capabilities = list(self._builtins.items())
            names = set(self._aliases)
        for name, capability in capabilities:
            names.add(name)
            names.update(d.get("name") for d in capability.get_declarations())
        return names

    # --- Plugin Registrations ---

    async def add_plugin(self, name: str, description: str, code: str) -> str:
        """Store new plugin code, disabled. Code is not validated here."""
        registration = PluginRegistration(
            id=generate_id(), name=name, description=description or "", code=code or ""
        )
        with self._lock:
            while registration.id in self._plugins:
                registration.id = generate_id()
            self._plugins[registration.id] = registration
        self._save()
        await self._changed("added", registration)
        return registration.id

    async def update_plugin(
        self,
        plugin_id: str,
        name: str,
        description: str,
        code: Optional[str] = None,
    ) -> PluginRegistration:
        """Replace metadata, and code when given. None keeps the old code."""
        with self._lock:
            registration = self._require(plugin_id)
            registration.name = name
            registration.description = description or ""
            if code is not None:
                registration.code = code
            snapshot = dataclasses.replace(registration)
        self._save()
        await self._changed("updated", snapshot)
        return snapshot

    async def set_enabled(self, plugin_id: str, enabled: bool) -> PluginRegistration:
        """Toggle a registration. No re-validation.

        Raises:
            PluginNotFound: Unknown id
            PluginStateError: Enabling a registration that has no code
        """
        with self._lock:
            registration = self._require(plugin_id)
            if enabled and not registration.has_code:
                raise PluginStateError(
                    f"Plugin '{registration.name}' has no code (restored "
                    "registrations need their code re-uploaded)"
                )
            registration.enabled = bool(enabled)
            snapshot = dataclasses.replace(registration)
        self._save()
        await self._changed("enabled" if enabled else "disabled", snapshot)
        return snapshot

    async def remove(self, plugin_id: str) -> None:
        """Delete a registration.

        Raises:
            PluginNotFound: Unknown id
        """
        with self._lock:
            registration = self._require(plugin_id)
            del self._plugins[plugin_id]
        self._save()
        await self._changed("removed", registration)

    def get_plugin(self, plugin_id: str) -> PluginRegistration:
        """Snapshot of one registration.

        Raises:
            PluginNotFound: Unknown id
        """
        with self._lock:
            return dataclasses.replace(self._require(plugin_id))

    def list_plugins(self) -> list[PluginRegistration]:
        """Snapshots of all registrations, in registration order."""
        with self._lock:
            return [dataclasses.replace(r) for r in self._plugins.values()]

    def enabled_plugins(self) -> list[PluginRegistration]:
        """Enabled registrations that have code, in registration order."""
        with self._lock:
            return [
                dataclasses.replace(r)
                for r in self._plugins.values()
                if r.enabled and r.has_code
            ]

    def _require(self, plugin_id: str) -> PluginRegistration:
        registration = self._plugins.get(plugin_id)
        if registration is None:
            raise PluginNotFound(f"Plugin not found: {plugin_id}")
        return registration

    # --- Declarations ---

    async def list_declarations(self) -> list[dict]:
        """Tools manifest for the model endpoint.

        Built-in groups first, then one group per enabled plugin that
        declares something. Plugin names that collide with a built-in or an
        earlier plugin are dropped, since dispatch would never reach them.
        """
        groups = [capability.declaration_group() for capability in self.builtins()]

        plugins = self.enabled_plugins()
        sandbox = self.sandbox
        if not plugins or sandbox is None:
            return groups

        results = await asyncio.gather(
            *(sandbox.extract_declarations(p.code, p.name) for p in plugins),
            return_exceptions=True,
        )

        seen = self.builtin_names()
        for registration, result in zip(plugins, results):
            if isinstance(result, BaseException):
                print(
                    f"[Capabilities] Failed to extract declarations from "
                    f"'{registration.name}': {result}",
                    file=sys.stderr,
                )
                continue

            declarations = []
            for declaration in result:
                name = declaration.get("name") if isinstance(declaration, dict) else None
                if not name:
                    continue
                if name in seen:
                    print(
                        f"[Capabilities] '{registration.name}' declares '{name}' "
                        "which is already taken, skipping",
                        file=sys.stderr,
                    )
                    continue
                seen.add(name)
                declarations.append(declaration)

            if declarations:
                groups.append({"functionDeclarations": declarations})

        return groups

    # --- Internals ---

    def _save(self) -> None:
        if self._store is None:
            return
        with self._lock:
            registrations = list(self._plugins.values())
        self._store.save(registrations)

    async def _changed(self, action: str, registration: PluginRegistration) -> None:
        if self._registry is None:
            return
        await self._registry.run_hook(
            "on_plugin_changed",
            {"action": action, "id": registration.id, "name": registration.name},
        )


# Factory function for plugin discovery
def create_plugin() -> CapabilitiesPlugin:
    return CapabilitiesPlugin()
