"""Relay plugin - owns the live relay sessions.

Priority: 60 (after router)
Capability: relay
"""

import asyncio
import sys
from typing import Iterable, Optional, Union
from urllib.parse import urlencode

from ..base import Plugin, PluginMeta
from ..config.plugin import DEFAULT_UPSTREAM_URL
from ..interfaces import Peer
from .session import Connector, Observer, RelaySession
from .transports import connect_upstream


class RelayPlugin(Plugin):
    """Session relay between downstream clients and the model endpoint."""

    meta = PluginMeta(
        id="relay",
        version="1.0.0",
        capabilities=["relay"],
        dependencies=["config"],
        priority=60,
    )

    def __init__(self):
        self._upstream_url: str = DEFAULT_UPSTREAM_URL
        self._api_key: Optional[str] = None
        self._connect_timeout: Optional[float] = 30.0
        self._pending_limit: Optional[int] = None
        self._bridge_tool_calls: bool = False
        self._connector: Connector = connect_upstream
        self._sessions: dict[str, RelaySession] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._registry = None

    def configure(self, config: dict) -> None:
        relay_config = config.get("relay", {}) or {}
        self._upstream_url = relay_config.get("upstream_url") or DEFAULT_UPSTREAM_URL
        self._api_key = relay_config.get("api_key") or None
        # 0 waits for the upstream indefinitely
        timeout = float(relay_config.get("connect_timeout", 30.0))
        self._connect_timeout = timeout or None
        limit = relay_config.get("max_pending_messages")
        self._pending_limit = int(limit) if limit not in (None, "") else None
        self._bridge_tool_calls = bool(relay_config.get("bridge_tool_calls", False))

    def set_registry(self, registry) -> None:
        self._registry = registry

    async def start(self) -> None:
        limit = self._pending_limit if self._pending_limit is not None else "unbounded"
        print(
            f"[Relay] Upstream {self._upstream_url}, queue limit {limit}, "
            f"bridge {'on' if self._bridge_tool_calls else 'off'}",
            file=sys.stderr,
        )
        if not self._api_key:
            print(
                "[Relay] No relay.api_key configured, clients must pass ?key=",
                file=sys.stderr,
            )

    async def stop(self) -> None:
        await self.close_all()

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key

    @property
    def bridge_tool_calls(self) -> bool:
        return self._bridge_tool_calls

    def set_connector(self, connector: Connector) -> None:
        """Replace how upstream connections are opened (tests, custom transports)."""
        self._connector = connector

    def upstream_target(
        self, path: str = "", query: Union[dict, Iterable[tuple[str, str]], None] = None
    ) -> tuple[str, str]:
        """Build the upstream address for a downstream request.

        `query` is a mapping or a sequence of (name, value) pairs; repeated
        parameters are forwarded as they came. Returns (target, credential).
        The credential is the request's first `key` parameter, falling back
        to relay.api_key.
        """
        items = list(query.items()) if isinstance(query, dict) else list(query or [])
        keys = [value for name, value in items if name == "key"]
        credential = (keys[0] if keys else None) or self._api_key or ""
        params = [(name, value) for name, value in items if name != "key"]

        target = self._upstream_url.rstrip("/")
        if path:
            target = f"{target}/{path.lstrip('/')}"
        if params:
            target = f"{target}?{urlencode(params, doseq=True)}"
        return target, credential

    def open_session(
        self,
        downstream: Peer,
        target: str,
        credential: Optional[str] = None,
        connector: Optional[Connector] = None,
        observers: Optional[list[Observer]] = None,
    ) -> str:
        """Start relaying an accepted downstream peer. Returns the session id."""
        session = RelaySession(
            downstream,
            target,
            credential=credential,
            connector=connector or self._connector,
            connect_timeout=self._connect_timeout,
            pending_limit=self._pending_limit,
            hooks=self._run_hook,
        )
        for observer in observers or []:
            session.add_upstream_observer(observer)

        self._sessions[session.id] = session
        self._tasks[session.id] = asyncio.create_task(
            self._run_session(session), name=f"relay-{session.id}"
        )
        print(f"[Relay] Session {session.id} → {session.info()['target']}", file=sys.stderr)
        return session.id

    async def wait_session(self, session_id: str) -> Optional[RelaySession]:
        """Wait for a session to end. Returns it, or None if unknown."""
        session = self._sessions.get(session_id)
        task = self._tasks.get(session_id)
        if task is not None:
            await task
        return session

    def get_session(self, session_id: str) -> Optional[RelaySession]:
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[dict]:
        return [session.info() for session in list(self._sessions.values())]

    async def close_all(self, code: int = 1001, reason: str = "Server shutting down") -> None:
        sessions = list(self._sessions.values())
        for session in sessions:
            await session.close(code, reason, origin="host")
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if sessions:
            print(f"[Relay] Closed {len(sessions)} session(s)", file=sys.stderr)

    async def _run_session(self, session: RelaySession) -> None:
        try:
            await session.run()
        finally:
            self._sessions.pop(session.id, None)
            self._tasks.pop(session.id, None)
            print(
                f"[Relay] Session {session.id} closed by {session.close_origin} "
                f"({session.close_code})",
                file=sys.stderr,
            )

    async def _run_hook(self, hook: str, ctx: dict) -> dict:
        if self._registry is None:
            return ctx
        return await self._registry.run_hook(hook, ctx)


# Factory function for plugin discovery
def create_plugin() -> RelayPlugin:
    return RelayPlugin()
