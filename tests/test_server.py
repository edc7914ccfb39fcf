"""Tests for the corelay server (relay endpoint and operator API)."""

import asyncio
import json
import textwrap

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from corelay.plugins import (
    FunctionCapability,
    Peer,
    PeerClosed,
    PluginRegistry,
    RelayConnectionError,
)
from corelay.plugins.capabilities.plugin import CapabilitiesPlugin
from corelay.plugins.config.plugin import ConfigPlugin
from corelay.plugins.relay.plugin import RelayPlugin
from corelay.plugins.router.plugin import RouterPlugin
from corelay.plugins.sandbox.plugin import SandboxPlugin
from corelay.server import create_app, parse_tool_calls

CLOCK = textwrap.dedent(
    """
    tools.add_declaration({"name": "get_time", "description": "Current time"})

    def handle(context):
        if context.function != "get_time":
            return None
        return "12:00 " + context.args.get("tz", "UTC")
    """
)


class EchoUpstream(Peer):
    """Upstream model stand-in that sends every frame straight back."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed_with = None

    async def send(self, frame) -> None:
        self.queue.put_nowait(frame)

    async def receive(self):
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed_with is None:
            self.closed_with = (code, reason)
            self.queue.put_nowait(PeerClosed(code, reason))


def build_registry(config=None, router=True, sandbox=False):
    registry = PluginRegistry()
    registry.register(ConfigPlugin)
    if sandbox:
        registry.register(SandboxPlugin)
    registry.register(CapabilitiesPlugin)
    if router:
        registry.register(RouterPlugin)
    registry.register(RelayPlugin)
    registry.configure_all(config or {"relay": {"upstream_url": "wss://model.test"}})
    return registry


def echo_capability():
    return FunctionCapability(
        "echo",
        lambda args: args.get("text", ""),
        description="Echo text back",
        parameters={"type": "object", "properties": {"text": {"type": "string"}}},
    )


@pytest.fixture
def registry():
    registry = build_registry()
    registry.get("capabilities").register(echo_capability())
    return registry


@pytest.fixture
def client(registry):
    with TestClient(create_app(registry)) as client:
        yield client


class TestParseToolCalls:
    """Test extraction of function calls from upstream frames."""

    def test_tool_call_frame(self):
        frame = json.dumps(
            {"toolCall": {"functionCalls": [{"name": "echo", "args": {}, "id": "1"}]}}
        )
        assert parse_tool_calls(frame) == [{"name": "echo", "args": {}, "id": "1"}]

    def test_bytes_frame(self):
        frame = json.dumps({"toolCall": {"functionCalls": [{"name": "echo"}]}}).encode()
        assert parse_tool_calls(frame) == [{"name": "echo"}]

    def test_other_frames(self):
        assert parse_tool_calls('{"serverContent": {}}') == []
        assert parse_tool_calls("not json") == []
        assert parse_tool_calls(b"\x00\x01audio") == []
        assert parse_tool_calls("{broken") == []
        assert parse_tool_calls('{"toolCall": "nope"}') == []


class TestHealth:
    """Test the health endpoint."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["sessions"] == 0
        assert data["components"] == ["config", "capabilities", "router", "relay"]


class TestToolsApi:
    """Test the manifest and manual dispatch."""

    def test_list_tools(self, client):
        response = client.get("/api/tools")

        assert response.status_code == 200
        tools = response.json()["tools"]
        assert tools[0]["functionDeclarations"][0]["name"] == "echo"

    def test_dispatch(self, client):
        response = client.post(
            "/api/dispatch", json={"name": "echo", "args": {"text": "hi"}, "id": "1"}
        )

        assert response.status_code == 200
        assert response.json() == {"id": "1", "response": {"output": "hi"}}

    def test_dispatch_unknown(self, client):
        response = client.post("/api/dispatch", json={"name": "nope", "id": "2"})

        data = response.json()
        assert data["response"] == {"error": "Unknown tool: nope"}
        assert data["error_kind"] == "unknown_capability"

    def test_dispatch_without_router(self):
        registry = build_registry(router=False)
        with TestClient(create_app(registry)) as client:
            response = client.post("/api/dispatch", json={"name": "echo"})
        assert response.status_code == 503


class TestPluginsApi:
    """Test plugin management endpoints."""

    def test_add_and_get(self, client):
        response = client.post(
            "/api/plugins", json={"name": "clock", "description": "Time", "code": CLOCK}
        )

        assert response.status_code == 201
        data = response.json()
        assert data["validation"] == {"valid": True, "error": None}

        plugin = client.get(f"/api/plugins/{data['id']}").json()
        assert plugin["name"] == "clock"
        assert plugin["enabled"] is False
        assert plugin["code"] == CLOCK

    def test_add_invalid_code_is_stored(self, client):
        response = client.post("/api/plugins", json={"name": "bad", "code": "def ("})

        assert response.status_code == 201
        assert response.json()["validation"]["valid"] is False
        assert len(client.get("/api/plugins").json()["plugins"]) == 1

    def test_list_hides_code(self, client):
        client.post("/api/plugins", json={"name": "clock", "code": CLOCK})

        plugins = client.get("/api/plugins").json()["plugins"]

        assert plugins[0]["has_code"] is True
        assert "code" not in plugins[0]

    def test_update_keeps_code_when_omitted(self, client):
        plugin_id = client.post("/api/plugins", json={"name": "clock", "code": CLOCK}).json()["id"]

        response = client.put(
            f"/api/plugins/{plugin_id}", json={"name": "clock2", "description": "new"}
        )

        assert response.status_code == 200
        assert response.json()["plugin"]["name"] == "clock2"
        assert client.get(f"/api/plugins/{plugin_id}").json()["code"] == CLOCK

    def test_enable_disable(self, client):
        plugin_id = client.post("/api/plugins", json={"name": "clock", "code": CLOCK}).json()["id"]

        enabled = client.post(f"/api/plugins/{plugin_id}/enable")
        assert enabled.json()["plugin"]["enabled"] is True

        disabled = client.post(f"/api/plugins/{plugin_id}/disable")
        assert disabled.json()["plugin"]["enabled"] is False

    def test_enable_without_code_conflicts(self, client):
        plugin_id = client.post("/api/plugins", json={"name": "empty"}).json()["id"]

        response = client.post(f"/api/plugins/{plugin_id}/enable")

        assert response.status_code == 409

    def test_remove(self, client):
        plugin_id = client.post("/api/plugins", json={"name": "clock", "code": CLOCK}).json()["id"]

        response = client.delete(f"/api/plugins/{plugin_id}")

        assert response.json() == {"removed": plugin_id}
        assert client.get(f"/api/plugins/{plugin_id}").status_code == 404

    def test_unknown_plugin(self, client):
        assert client.get("/api/plugins/nope").status_code == 404
        assert client.put("/api/plugins/nope", json={"name": "x"}).status_code == 404
        assert client.post("/api/plugins/nope/enable").status_code == 404
        assert client.delete("/api/plugins/nope").status_code == 404

    def test_validate(self, client):
        ok = client.post("/api/plugins/validate", json={"code": CLOCK}).json()
        bad = client.post("/api/plugins/validate", json={"code": "def (:"}).json()

        assert ok == {"valid": True, "error": None}
        assert bad["valid"] is False
        assert "line 1" in bad["error"]

    def test_sessions_empty(self, client):
        assert client.get("/api/sessions").json() == {"sessions": []}


class TestSandboxedPlugins:
    """End to end: plugin code stored over the API and run in the sandbox."""

    @pytest.fixture
    def client(self):
        registry = build_registry(sandbox=True)
        with TestClient(create_app(registry)) as client:
            yield client

    def test_enabled_plugin_handles_call(self, client):
        plugin_id = client.post("/api/plugins", json={"name": "clock", "code": CLOCK}).json()["id"]
        client.post(f"/api/plugins/{plugin_id}/enable")

        tools = client.get("/api/tools").json()["tools"]
        response = client.post(
            "/api/dispatch", json={"name": "get_time", "args": {"tz": "CET"}, "id": "t1"}
        )

        assert tools == [
            {"functionDeclarations": [{"name": "get_time", "description": "Current time"}]}
        ]
        assert response.json() == {"id": "t1", "response": {"output": "12:00 CET"}}


class TestRelayEndpoint:
    """Test the WebSocket relay."""

    def make_client(self, config=None, connector=None):
        registry = build_registry(config)
        registry.get("capabilities").register(echo_capability())
        urls = []

        async def echo_connector(url, timeout):
            urls.append(url)
            return EchoUpstream()

        registry.get("relay").set_connector(connector or echo_connector)
        return TestClient(create_app(registry)), urls

    def test_frames_relayed(self):
        client, urls = self.make_client()

        with client:
            with client.websocket_connect("/ws/v1/live?key=abc&alt=x") as ws:
                ws.send_text("hello")
                assert ws.receive_text() == "hello"
                ws.send_bytes(b"\x00\x01")
                assert ws.receive_bytes() == b"\x00\x01"

        assert urls == ["wss://model.test/v1/live?alt=x&key=abc"]

    def test_api_key_fallback(self):
        client, urls = self.make_client(
            {"relay": {"upstream_url": "wss://model.test", "api_key": "server-key"}}
        )

        with client:
            with client.websocket_connect("/ws/live") as ws:
                ws.send_text("ping")
                assert ws.receive_text() == "ping"

        assert urls == ["wss://model.test/live?key=server-key"]

    def test_repeated_query_parameters_forwarded(self):
        client, urls = self.make_client()

        with client:
            with client.websocket_connect("/ws/live?scope=a&key=abc&scope=b") as ws:
                ws.send_text("ping")
                assert ws.receive_text() == "ping"

        assert urls == ["wss://model.test/live?scope=a&scope=b&key=abc"]

    def test_upstream_unreachable_closes_with_1011(self):
        async def refused(url, timeout):
            raise RelayConnectionError("Upstream connection failed: refused")

        client, _ = self.make_client(connector=refused)

        with client:
            with client.websocket_connect("/ws/live") as ws:
                with pytest.raises(WebSocketDisconnect) as exc_info:
                    ws.receive_text()

        assert exc_info.value.code == 1011

    def test_tool_calls_bridged(self):
        client, _ = self.make_client(
            {"relay": {"upstream_url": "wss://model.test", "bridge_tool_calls": True}}
        )
        call = {
            "toolCall": {
                "functionCalls": [
                    {"name": "echo", "args": {"text": "hi"}, "id": "c1"},
                    {"name": "nope", "args": {}, "id": "c2"},
                ]
            }
        }

        with client:
            with client.websocket_connect("/ws/live") as ws:
                ws.send_text(json.dumps(call))
                # The echo upstream returns the call, then the bridged response
                assert json.loads(ws.receive_text()) == call
                response = json.loads(ws.receive_text())

        assert response == {
            "toolResponse": {
                "functionResponses": [
                    {"id": "c1", "response": {"output": "hi"}},
                    {"id": "c2", "response": {"error": "Unknown tool: nope"}},
                ]
            }
        }

    def test_tool_calls_not_bridged_by_default(self):
        client, _ = self.make_client()
        call = {"toolCall": {"functionCalls": [{"name": "echo", "args": {}, "id": "c1"}]}}

        with client:
            with client.websocket_connect("/ws/live") as ws:
                ws.send_text(json.dumps(call))
                assert json.loads(ws.receive_text()) == call
                ws.send_text("marker")
                assert ws.receive_text() == "marker"
