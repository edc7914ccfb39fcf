"""Router plugin - dispatches capability calls.

Priority: 50 (after capabilities)
Capability: router

Resolution order for a call:
1. built-in with that name (or alias)
2. enabled plugins in registration order; the first one that returns
   something other than None handles the call
3. otherwise the call fails as an unknown capability

Every call yields exactly one CapabilityResult carrying the call's id.
"""

import asyncio
import sys
from typing import Optional, Union

from ..base import Plugin, PluginMeta
from ..interfaces import (
    CapabilityCall,
    CapabilityResult,
    ExecutionError,
    UnknownCapability,
)


class RouterPlugin(Plugin):
    """Capability router."""

    meta = PluginMeta(
        id="router",
        version="1.0.0",
        capabilities=["router"],
        dependencies=["capabilities"],
        priority=50,
    )

    def __init__(self):
        self._registry = None

    def configure(self, config: dict) -> None:
        pass

    def set_registry(self, registry) -> None:
        self._registry = registry

    async def start(self) -> None:
        if self.sandbox is None:
            print("[Router] No sandbox, plugin code will not run", file=sys.stderr)

    async def stop(self) -> None:
        pass

    @property
    def capabilities(self):
        return self._registry.get_by_capability("capabilities")

    @property
    def sandbox(self):
        if self._registry is None:
            return None
        return self._registry.get_by_capability("sandbox")

    async def dispatch(self, call: Union[CapabilityCall, dict]) -> CapabilityResult:
        """Route one call and return its result. Never raises."""
        if isinstance(call, dict):
            call = CapabilityCall.from_dict(call)

        ctx = await self._registry.run_hook(
            "on_before_tool_exec",
            {"tool": call.name, "args": call.args, "id": call.correlation_id},
        )
        if ctx.get("abort"):
            reason = ctx.get("abort_message") or f"Tool {call.name} was blocked"
            result = CapabilityResult.failure(call.correlation_id, reason, kind="blocked")
        else:
            result = await self._resolve(call)

        await self._registry.run_hook(
            "on_after_tool_exec",
            {
                "tool": call.name,
                "id": call.correlation_id,
                "output": result.output,
                "error": result.error,
                "error_kind": result.error_kind,
            },
        )
        return result

    async def dispatch_many(
        self, calls: list[Union[CapabilityCall, dict]]
    ) -> list[CapabilityResult]:
        """Dispatch calls concurrently. Results keep the order of the calls."""
        return list(await asyncio.gather(*(self.dispatch(call) for call in calls)))

    async def _resolve(self, call: CapabilityCall) -> CapabilityResult:
        capabilities = self.capabilities

        builtin = capabilities.get_builtin(call.name)
        if builtin is not None:
            try:
                output = await builtin.execute(call.args)
            except Exception as e:
                print(f"[Router] Tool {call.name} failed: {e}", file=sys.stderr)
                return CapabilityResult.failure(call.correlation_id, str(e))
            return CapabilityResult.success(call.correlation_id, output)

        result = await self._try_plugins(call)
        if result is not None:
            return result

        error = UnknownCapability(call.name)
        return CapabilityResult.failure(
            call.correlation_id, str(error), kind="unknown_capability"
        )

    async def _try_plugins(self, call: CapabilityCall) -> Optional[CapabilityResult]:
        sandbox = self.sandbox
        if sandbox is None:
            return None

        for registration in self.capabilities.enabled_plugins():
            try:
                output = await sandbox.invoke(
                    registration.code, call.name, call.args, registration.name
                )
            except ExecutionError as e:
                print(
                    f"[Router] Plugin '{registration.name}' failed on {call.name}: {e}",
                    file=sys.stderr,
                )
                return CapabilityResult.failure(call.correlation_id, str(e))
            if output is not None:
                return CapabilityResult.success(call.correlation_id, output)

        return None


# Factory function for plugin discovery
def create_plugin() -> RouterPlugin:
    return RouterPlugin()
