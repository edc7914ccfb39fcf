"""corelay server - hosts the relay and the capability API.

Downstream clients connect to /ws/{path}; each connection becomes one relay
session to the upstream model endpoint. With relay.bridge_tool_calls on,
tool calls the model sends are answered by the router and the responses are
sent back upstream on the session's downstream-to-upstream path.

The /api routes let an operator inspect the tools manifest, dispatch calls
by hand and manage plugin code.
"""

import asyncio
import json
import sys
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, WebSocket
from pydantic import BaseModel, Field

from corelay import __version__
from corelay.plugins import CapabilityCall, PluginNotFound, PluginStateError
from corelay.plugins.interfaces import Frame
from corelay.plugins.relay.transports import FastAPIPeer


class PluginCreate(BaseModel):
    name: str
    description: str = ""
    code: str = ""


class PluginUpdate(BaseModel):
    name: str
    description: str = ""
    code: Optional[str] = None  # None keeps the current code


class CodeCheck(BaseModel):
    code: str


class DispatchRequest(BaseModel):
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None


def parse_tool_calls(frame: Frame) -> list[dict]:
    """Function calls carried by an upstream frame, if any.

    Frames that are not JSON objects (audio, other binary payloads) carry
    none.
    """
    if isinstance(frame, bytes):
        if not frame.lstrip().startswith(b"{"):
            return []
        try:
            frame = frame.decode("utf-8")
        except UnicodeDecodeError:
            return []
    elif not frame.lstrip().startswith("{"):
        return []

    try:
        message = json.loads(frame)
    except json.JSONDecodeError:
        return []

    tool_call = message.get("toolCall") if isinstance(message, dict) else None
    if not isinstance(tool_call, dict):
        return []
    calls = tool_call.get("functionCalls") or []
    return [call for call in calls if isinstance(call, dict)]


class Corelay:
    """Hosting application around the plugin registry."""

    def __init__(self, registry):
        self.registry = registry
        self._bridge_tasks: set[asyncio.Task] = set()

    @property
    def relay(self):
        return self.registry.get_by_capability("relay")

    @property
    def router(self):
        return self.registry.get_by_capability("router")

    @property
    def capabilities(self):
        return self.registry.get_by_capability("capabilities")

    def _require(self, component, name: str):
        if component is None:
            raise HTTPException(status_code=503, detail=f"{name} component not loaded")
        return component

    # --- Relay ---

    async def handle_websocket(self, websocket: WebSocket, path: str) -> None:
        relay = self.relay
        await websocket.accept()
        if relay is None:
            await websocket.close(code=1011, reason="relay component not loaded")
            return

        target, credential = relay.upstream_target(path, websocket.query_params.multi_items())

        observers = []
        if relay.bridge_tool_calls and self.router is not None:
            observers.append(self._bridge_tool_calls)

        session_id = relay.open_session(
            FastAPIPeer(websocket), target, credential, observers=observers
        )
        await relay.wait_session(session_id)

    def _bridge_tool_calls(self, session, frame: Frame) -> None:
        calls = parse_tool_calls(frame)
        if not calls:
            return
        task = asyncio.create_task(self._answer_tool_calls(session, calls))
        self._bridge_tasks.add(task)
        task.add_done_callback(self._bridge_tasks.discard)

    async def _answer_tool_calls(self, session, calls: list[dict]) -> None:
        results = await self.router.dispatch_many(
            [CapabilityCall.from_dict(call) for call in calls]
        )

        if session.closed:
            print(
                f"[Server] Session {session.id} closed, dropping "
                f"{len(results)} tool response(s)",
                file=sys.stderr,
            )
            return

        payload = {
            "toolResponse": {"functionResponses": [r.to_dict() for r in results]}
        }
        sent = await session.send_upstream(json.dumps(payload, default=str))
        if not sent:
            print(
                f"[Server] Session {session.id} closed before tool response was sent",
                file=sys.stderr,
            )

    async def stop(self) -> None:
        """Cancel tool calls still running for closed sessions."""
        for task in list(self._bridge_tasks):
            task.cancel()
        if self._bridge_tasks:
            await asyncio.gather(*self._bridge_tasks, return_exceptions=True)

    # --- Operator API ---

    def health(self) -> dict:
        relay = self.relay
        return {
            "status": "ok",
            "version": __version__,
            "sessions": len(relay.list_sessions()) if relay else 0,
            "components": [p["id"] for p in self.registry.list_plugins()],
        }

    async def list_tools(self) -> dict:
        capabilities = self._require(self.capabilities, "capabilities")
        return {"tools": await capabilities.list_declarations()}

    async def dispatch(self, request: DispatchRequest) -> dict:
        router = self._require(self.router, "router")
        call = CapabilityCall(name=request.name, args=request.args, correlation_id=request.id)
        result = await router.dispatch(call)
        data = result.to_dict()
        if result.error_kind:
            data["error_kind"] = result.error_kind
        return data

    def list_plugins(self) -> dict:
        capabilities = self._require(self.capabilities, "capabilities")
        return {"plugins": [r.to_dict() for r in capabilities.list_plugins()]}

    def get_plugin(self, plugin_id: str) -> dict:
        capabilities = self._require(self.capabilities, "capabilities")
        try:
            return capabilities.get_plugin(plugin_id).to_dict(include_code=True)
        except PluginNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

    async def add_plugin(self, body: PluginCreate) -> dict:
        capabilities = self._require(self.capabilities, "capabilities")
        validation = capabilities.validate(body.code)
        plugin_id = await capabilities.add_plugin(body.name, body.description, body.code)
        return {"id": plugin_id, "validation": validation.to_dict()}

    async def update_plugin(self, plugin_id: str, body: PluginUpdate) -> dict:
        capabilities = self._require(self.capabilities, "capabilities")
        try:
            registration = await capabilities.update_plugin(
                plugin_id, body.name, body.description, body.code
            )
        except PluginNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        validation = capabilities.validate(registration.code)
        return {"plugin": registration.to_dict(), "validation": validation.to_dict()}

    async def set_enabled(self, plugin_id: str, enabled: bool) -> dict:
        capabilities = self._require(self.capabilities, "capabilities")
        try:
            registration = await capabilities.set_enabled(plugin_id, enabled)
        except PluginNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except PluginStateError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"plugin": registration.to_dict()}

    async def remove_plugin(self, plugin_id: str) -> dict:
        capabilities = self._require(self.capabilities, "capabilities")
        try:
            await capabilities.remove(plugin_id)
        except PluginNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"removed": plugin_id}

    def validate(self, body: CodeCheck) -> dict:
        capabilities = self._require(self.capabilities, "capabilities")
        return capabilities.validate(body.code).to_dict()

    def list_sessions(self) -> dict:
        relay = self._require(self.relay, "relay")
        return {"sessions": relay.list_sessions()}


def create_app(registry) -> FastAPI:
    """Build the FastAPI app. Components start and stop with the app."""
    corelay = Corelay(registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await registry.start_all()
        try:
            yield
        finally:
            await corelay.stop()
            await registry.stop_all()

    app = FastAPI(title="corelay", version=__version__, lifespan=lifespan)
    app.state.corelay = corelay

    @app.websocket("/ws/{path:path}")
    async def relay_socket(websocket: WebSocket, path: str):
        await corelay.handle_websocket(websocket, path)

    @app.get("/health")
    async def health():
        return corelay.health()

    @app.get("/api/tools")
    async def list_tools():
        return await corelay.list_tools()

    @app.post("/api/dispatch")
    async def dispatch(request: DispatchRequest):
        return await corelay.dispatch(request)

    @app.get("/api/plugins")
    async def list_plugins():
        return corelay.list_plugins()

    @app.post("/api/plugins", status_code=201)
    async def add_plugin(body: PluginCreate):
        return await corelay.add_plugin(body)

    @app.post("/api/plugins/validate")
    async def validate(body: CodeCheck):
        return corelay.validate(body)

    @app.get("/api/plugins/{plugin_id}")
    async def get_plugin(plugin_id: str):
        return corelay.get_plugin(plugin_id)

    @app.put("/api/plugins/{plugin_id}")
    async def update_plugin(plugin_id: str, body: PluginUpdate):
        return await corelay.update_plugin(plugin_id, body)

    @app.delete("/api/plugins/{plugin_id}")
    async def remove_plugin(plugin_id: str):
        return await corelay.remove_plugin(plugin_id)

    @app.post("/api/plugins/{plugin_id}/enable")
    async def enable_plugin(plugin_id: str):
        return await corelay.set_enabled(plugin_id, True)

    @app.post("/api/plugins/{plugin_id}/disable")
    async def disable_plugin(plugin_id: str):
        return await corelay.set_enabled(plugin_id, False)

    @app.get("/api/sessions")
    async def list_sessions():
        return corelay.list_sessions()

    return app
