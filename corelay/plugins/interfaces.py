"""Capability interfaces for plugins.

Components that provide a concern implement these interfaces so the rest of
the process can depend on the interface instead of a concrete component
(e.g. the router only needs a SandboxProvider, not the sandbox plugin).
"""

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union


class CorelayError(Exception):
    """Base class for corelay errors."""

    pass


# --- Relay Errors ---


class RelayError(CorelayError):
    """Error from the session relay."""

    pass


class RelayConnectionError(RelayError):
    """Upstream endpoint unreachable or terminated. Terminal for the session."""

    pass


class QueueOverflow(RelayError):
    """Too many downstream messages queued while the upstream was connecting."""

    pass


class FrameError(RelayError):
    """A single bad frame. Logged, does not close the session."""

    pass


class PeerClosed(RelayError):
    """The peer connection is closed."""

    def __init__(self, code: Optional[int] = None, reason: str = ""):
        self.code = code
        self.reason = reason or ""
        super().__init__(f"Peer closed ({code}): {reason or 'no reason'}")


# --- Capability Errors ---


class CapabilityError(CorelayError):
    """Error from the capability layer."""

    pass


class DuplicateCapability(CapabilityError):
    """A built-in capability with this name is already registered."""

    pass


class UnknownCapability(CapabilityError):
    """No built-in and no plugin handled the call."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class PluginNotFound(CapabilityError):
    """No plugin registration with this id."""

    pass


class PluginStateError(CapabilityError):
    """The plugin registration cannot change to the requested state."""

    pass


class ExecutionError(CapabilityError):
    """Capability or sandboxed plugin code faulted at run time."""

    pass


# --- Peers ---

Frame = Union[str, bytes]


class Peer(ABC):
    """One side of a relayed session (downstream client or upstream model).

    receive() raises PeerClosed once the connection is gone and FrameError
    for a frame that could not be read but left the connection usable.
    """

    @abstractmethod
    async def send(self, frame: Frame) -> None:
        """Send one frame. Raises PeerClosed if the peer is gone."""
        pass

    @abstractmethod
    async def receive(self) -> Frame:
        """Wait for the next frame."""
        pass

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the connection. Closing twice is a no-op."""
        pass


# --- Capability Calls ---


@dataclass
class CapabilityCall:
    """A tool call from the model."""

    name: str
    args: dict = field(default_factory=dict)
    correlation_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "CapabilityCall":
        """Parse {name, args, id} (the function call wire format)."""
        return cls(
            name=data.get("name", ""),
            args=data.get("args") or {},
            correlation_id=data.get("id", data.get("correlation_id")),
        )


@dataclass
class CapabilityResult:
    """Result of one capability call. Carries the call's correlation id."""

    correlation_id: Optional[str]
    output: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None  # "execution", "unknown_capability", "blocked"

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, correlation_id: Optional[str], output: Any) -> "CapabilityResult":
        return cls(correlation_id=correlation_id, output=output)

    @classmethod
    def failure(
        cls, correlation_id: Optional[str], error: str, kind: str = "execution"
    ) -> "CapabilityResult":
        return cls(correlation_id=correlation_id, error=error, error_kind=kind)

    def to_dict(self) -> dict:
        """Function response wire format: {id, response: {output|error}}."""
        if self.ok:
            response = {"output": self.output}
        else:
            response = {"error": self.error}
        return {"id": self.correlation_id, "response": response}


@dataclass
class ValidationResult:
    """Outcome of a syntax-only check of plugin code."""

    valid: bool
    error_detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {"valid": self.valid, "error": self.error_detail}


# --- Built-in Capabilities ---


class Capability(ABC):
    """A built-in capability implemented by the host.

    A capability may answer to several call names through `aliases`, e.g. a
    family of related functions sharing one implementation.
    """

    name: str = ""
    description: str = ""
    parameters: dict = {"type": "object", "properties": {}, "required": []}
    aliases: tuple = ()

    def get_declarations(self) -> list[dict]:
        """Function declarations this capability exposes to the model."""
        return [
            {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            }
        ]

    def declaration_group(self) -> dict:
        """Entry for the tools manifest sent to the model endpoint."""
        return {"functionDeclarations": self.get_declarations()}

    @abstractmethod
    async def execute(self, args: dict) -> Any:
        """Run the capability. Raise ExecutionError (or anything) on failure."""
        pass


class FunctionCapability(Capability):
    """Wrap a plain (sync or async) function as a built-in capability.

    Example:
        echo = FunctionCapability(
            "echo",
            lambda args: args["text"],
            description="Echo text back",
            parameters={"type": "object", "properties": {"text": {"type": "string"}}},
        )
    """

    def __init__(
        self,
        name: str,
        func: Callable[[dict], Union[Any, Awaitable[Any]]],
        description: str = "",
        parameters: Optional[dict] = None,
        aliases: tuple = (),
    ):
        self.name = name
        self.description = description
        self.parameters = parameters or {
            "type": "object",
            "properties": {},
            "required": [],
        }
        self.aliases = tuple(aliases)
        self._func = func

    async def execute(self, args: dict) -> Any:
        result = self._func(args)
        if inspect.isawaitable(result):
            result = await result
        return result


# --- Sandbox Provider Interface ---


class SandboxProvider(ABC):
    """Interface for the plugin sandbox.

    Any plugin with capability ["sandbox"] must implement this interface.
    """

    @abstractmethod
    def validate(self, code: str) -> ValidationResult:
        """Syntax-only check. Never executes the code."""
        pass

    @abstractmethod
    async def extract_declarations(self, code: str, label: str = "plugin") -> list[dict]:
        """Run the code in declaration-extraction mode.

        Raises:
            ExecutionError: If the code faults or times out
        """
        pass

    @abstractmethod
    async def invoke(
        self, code: str, function: str, args: dict, label: str = "plugin"
    ) -> Any:
        """Run the code in invocation mode.

        Returns:
            The handler's output, or None if the plugin declined the call

        Raises:
            ExecutionError: If the code faults or times out
        """
        pass
