"""Logger plugin - logs session and tool lifecycle events.

Priority: 5 (very early, logs everything)
"""

import json
import sys
from datetime import datetime, timezone

from ..base import Plugin, PluginMeta


class LoggerPlugin(Plugin):
    """Logging plugin for lifecycle events."""

    meta = PluginMeta(
        id="logger",
        version="1.0.0",
        capabilities=["logging"],
        dependencies=[],
        priority=5,
    )

    def __init__(self):
        self._level: str = "info"
        self._levels = {"debug": 0, "info": 1, "warn": 2, "error": 3}

    def configure(self, config: dict) -> None:
        logger_config = config.get("logger", {}) or {}
        self._level = logger_config.get("level", "info")

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    def _should_log(self, level: str) -> bool:
        return self._levels.get(level, 1) >= self._levels.get(self._level, 1)

    def _log(self, level: str, hook: str, msg: str, **extra):
        if not self._should_log(level):
            return
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        parts = [f"[{ts}]", f"[{level[0].upper()}]", f"[{hook}]", msg]
        if extra:
            parts.append(json.dumps(extra, default=str))
        print(" ".join(parts), file=sys.stderr, flush=True)

    # --- Hook Methods ---

    async def on_session_open(self, ctx: dict) -> dict:
        session = ctx.get("session_id", "?")
        self._log("info", "session", f"{session} opened → {ctx.get('target', '')}")
        return ctx

    async def on_upstream_ready(self, ctx: dict) -> dict:
        session = ctx.get("session_id", "?")
        drained = ctx.get("drained", 0)
        self._log("info", "upstream", f"{session} connected, flushed {drained} queued")
        return ctx

    async def on_session_closed(self, ctx: dict) -> dict:
        session = ctx.get("session_id", "?")
        self._log(
            "info",
            "session",
            f"{session} closed by {ctx.get('origin', '?')}",
            code=ctx.get("code"),
            reason=ctx.get("reason") or None,
            frames_up=ctx.get("frames_up", 0),
            frames_down=ctx.get("frames_down", 0),
        )
        return ctx

    async def on_frame_error(self, ctx: dict) -> dict:
        session = ctx.get("session_id", "?")
        side = ctx.get("side", "?")
        self._log("warn", "frame", f"{session} bad {side} frame: {ctx.get('error', '')}")
        return ctx

    async def on_plugin_changed(self, ctx: dict) -> dict:
        action = ctx.get("action", "?")
        name = ctx.get("name", "")
        self._log("info", "plugin", f"{action} {ctx.get('id', '?')} ({name})")
        return ctx

    async def on_before_tool_exec(self, ctx: dict) -> dict:
        tool = ctx.get("tool", "")
        args = ctx.get("args", {}) or {}
        detail = json.dumps(args, default=str)
        if len(detail) > 80:
            detail = detail[:80] + "..."
        self._log("info", "tool", f"{tool}: {detail}", id=ctx.get("id"))
        return ctx

    async def on_after_tool_exec(self, ctx: dict) -> dict:
        tool = ctx.get("tool", "")
        if ctx.get("error"):
            self._log("warn", "tool_done", f"{tool} failed: {ctx['error']}")
            return ctx

        result = json.dumps(ctx.get("output"), default=str, ensure_ascii=False)
        if len(result) > 100:
            result = result[:100] + f"... ({len(result)} chars)"

        self._log("info", "tool_done", f"{tool} → {result}")
        return ctx

    async def on_error(self, ctx: dict) -> dict:
        error = ctx.get("error", "")
        hook = ctx.get("hook", "")
        self._log("error", "error", f"In {hook}: {error}")
        return ctx


def create_plugin() -> LoggerPlugin:
    return LoggerPlugin()
