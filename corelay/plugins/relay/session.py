"""Relay session - one downstream peer bridged to one upstream peer.

State machine: CONNECTING -> OPEN -> CLOSING -> CLOSED.

While the upstream connection is being established, downstream frames are
queued in arrival order. When the upstream opens, the queue is drained
under the session lock, so a frame that arrives during the drain waits
behind it. After that, frames flow both ways as they are received.

Either side closing closes the other with the same code and reason when
that code may be sent on the wire; otherwise 1000 for a clean close and
1011 for an error.
"""

import asyncio
import inspect
import sys
import time
import uuid
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..interfaces import (
    Frame,
    FrameError,
    Peer,
    PeerClosed,
    QueueOverflow,
    RelayConnectionError,
)
from .transports import connect_upstream, redact, with_credential

Connector = Callable[[str, Optional[float]], Awaitable[Peer]]
Observer = Callable[["RelaySession", Frame], Any]
HookRunner = Callable[[str, dict], Awaitable[dict]]

# Close codes that must never appear in a close frame
RESERVED_CLOSE_CODES = {1004, 1005, 1006, 1015}

# Close frame reasons are limited to 123 bytes of UTF-8
MAX_REASON_BYTES = 123


class SessionState(Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


def is_sendable(code: Optional[int]) -> bool:
    if code is None or code in RESERVED_CLOSE_CODES:
        return False
    return 1000 <= code <= 1014 or 3000 <= code <= 4999


def outbound_close_code(code: Optional[int], error: Optional[BaseException] = None) -> int:
    """Code to send to the other peer for a close received with `code`."""
    if is_sendable(code):
        return code
    if code in (1006, 1015) or error is not None:
        return 1011
    return 1000


def truncate_reason(reason: str) -> str:
    encoded = (reason or "").encode("utf-8")
    if len(encoded) <= MAX_REASON_BYTES:
        return reason or ""
    return encoded[:MAX_REASON_BYTES].decode("utf-8", errors="ignore")


class RelaySession:
    """Bridges a downstream peer to an upstream endpoint."""

    def __init__(
        self,
        downstream: Peer,
        target: str,
        credential: Optional[str] = None,
        connector: Optional[Connector] = None,
        connect_timeout: Optional[float] = 30.0,
        pending_limit: Optional[int] = None,
        hooks: Optional[HookRunner] = None,
        session_id: Optional[str] = None,
    ):
        self.id = session_id or uuid.uuid4().hex[:12]
        self.downstream: Optional[Peer] = downstream
        self.upstream: Optional[Peer] = None
        self.target = target
        self.state = SessionState.CONNECTING
        self.opened_at = time.time()

        self.close_code: Optional[int] = None
        self.close_reason: str = ""
        self.close_origin: Optional[str] = None
        self.error: Optional[BaseException] = None

        self.frames_up = 0
        self.frames_down = 0

        self._upstream_url = with_credential(target, credential)
        self._connector = connector or connect_upstream
        self._connect_timeout = connect_timeout
        self._pending_limit = pending_limit
        self._hooks = hooks

        self._pending: deque = deque()
        self._lock = asyncio.Lock()
        self._observers: list[Observer] = []
        self._tasks: list[asyncio.Task] = []
        self._closed = asyncio.Event()

    # --- Public API ---

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def add_upstream_observer(self, observer: Observer) -> None:
        """Call observer(session, frame) for every frame sent downstream."""
        self._observers.append(observer)

    async def run(self) -> None:
        """Run the session until both peers are closed."""
        await self._emit("on_session_open", {"target": redact(self._upstream_url)})

        self._tasks = [
            asyncio.create_task(self._pump_downstream(), name=f"relay-{self.id}-down"),
            asyncio.create_task(self._connect_and_pump(), name=f"relay-{self.id}-up"),
        ]

        try:
            await self._closed.wait()
        finally:
            if not self._closed.is_set():
                # Cancelled from outside
                await self.close(1001, "relay shutting down", origin="host")
            await asyncio.gather(*self._tasks, return_exceptions=True)

        await self._emit(
            "on_session_closed",
            {
                "origin": self.close_origin,
                "code": self.close_code,
                "reason": self.close_reason,
                "error": str(self.error) if self.error else None,
                "frames_up": self.frames_up,
                "frames_down": self.frames_down,
            },
        )

    async def send_upstream(self, frame: Frame) -> bool:
        """Inject a frame on the downstream-to-upstream path.

        Returns False if the session is closed and the frame was discarded.
        """
        try:
            return await self._forward_upstream(frame)
        except QueueOverflow as e:
            await self.close(1009, str(e), origin="relay", error=e)
        except PeerClosed as e:
            await self.close(e.code, e.reason, origin="upstream")
        return False

    async def close(
        self,
        code: Optional[int] = 1000,
        reason: str = "",
        origin: str = "host",
        error: Optional[BaseException] = None,
    ) -> None:
        """Close both peers. Later calls are no-ops."""
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.state = SessionState.CLOSING

        self.close_code = code
        self.close_reason = reason or ""
        self.close_origin = origin
        self.error = error

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()

        outbound = outbound_close_code(code, error)
        outbound_reason = truncate_reason(reason)

        for side, peer in (("upstream", self.upstream), ("downstream", self.downstream)):
            if peer is None:
                continue
            try:
                await peer.close(outbound, outbound_reason)
            except Exception as e:
                print(f"[Relay] {self.id}: error closing {side}: {e}", file=sys.stderr)

        self._pending.clear()
        self.upstream = None
        self.downstream = None
        self.state = SessionState.CLOSED
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def info(self) -> dict:
        return {
            "id": self.id,
            "state": self.state.value,
            "target": redact(self._upstream_url),
            "pending": self.pending,
            "frames_up": self.frames_up,
            "frames_down": self.frames_down,
            "opened_at": self.opened_at,
            "close_code": self.close_code,
            "close_reason": self.close_reason,
            "close_origin": self.close_origin,
        }

    # --- Internals ---

    async def _connect_and_pump(self) -> None:
        try:
            upstream = await self._connector(self._upstream_url, self._connect_timeout)
        except RelayConnectionError as e:
            print(f"[Relay] {self.id}: {e}", file=sys.stderr)
            await self.close(1011, str(e), origin="upstream", error=e)
            return
        except Exception as e:
            print(f"[Relay] {self.id}: upstream connect error: {e}", file=sys.stderr)
            await self.close(1011, str(e), origin="upstream", error=RelayConnectionError(str(e)))
            return

        drained = 0
        failure: Optional[PeerClosed] = None
        broken: Optional[Exception] = None
        async with self._lock:
            if self.state is not SessionState.CONNECTING:
                # Downstream left while we were connecting
                await upstream.close(outbound_close_code(self.close_code, self.error))
                return

            self.upstream = upstream
            try:
                while self._pending:
                    await upstream.send(self._pending[0])
                    self._pending.popleft()
                    drained += 1
                    self.frames_up += 1
            except PeerClosed as e:
                failure = e
            except Exception as e:
                broken = e
            self._pending.clear()
            self.state = SessionState.OPEN

        if failure is not None:
            await self.close(failure.code, failure.reason, origin="upstream")
            return
        if broken is not None:
            await self.close(1011, str(broken), origin="upstream", error=broken)
            return

        await self._emit("on_upstream_ready", {"drained": drained})
        await self._pump_upstream()

    async def _pump_downstream(self) -> None:
        while self.state in (SessionState.CONNECTING, SessionState.OPEN):
            try:
                frame = await self.downstream.receive()
            except FrameError as e:
                await self._frame_error("downstream", e)
                continue
            except PeerClosed as e:
                await self.close(e.code, e.reason, origin="downstream")
                return
            except Exception as e:
                await self.close(1011, str(e), origin="downstream", error=e)
                return

            try:
                await self._forward_upstream(frame)
            except QueueOverflow as e:
                print(f"[Relay] {self.id}: {e}", file=sys.stderr)
                await self.close(1009, str(e), origin="relay", error=e)
                return
            except PeerClosed as e:
                await self.close(e.code, e.reason, origin="upstream")
                return
            except Exception as e:
                await self.close(1011, str(e), origin="upstream", error=e)
                return

    async def _pump_upstream(self) -> None:
        while self.state is SessionState.OPEN:
            try:
                frame = await self.upstream.receive()
            except FrameError as e:
                await self._frame_error("upstream", e)
                continue
            except PeerClosed as e:
                await self.close(e.code, e.reason, origin="upstream")
                return
            except Exception as e:
                await self.close(1011, str(e), origin="upstream", error=e)
                return

            if self.state is not SessionState.OPEN:
                return

            try:
                await self.downstream.send(frame)
            except PeerClosed as e:
                await self.close(e.code, e.reason, origin="downstream")
                return
            except Exception as e:
                await self.close(1011, str(e), origin="downstream", error=e)
                return
            self.frames_down += 1

            await self._notify(frame)

    async def _forward_upstream(self, frame: Frame) -> bool:
        async with self._lock:
            if self.state is SessionState.CONNECTING:
                if (
                    self._pending_limit is not None
                    and len(self._pending) >= self._pending_limit
                ):
                    raise QueueOverflow(
                        f"More than {self._pending_limit} messages queued "
                        "before upstream was ready"
                    )
                self._pending.append(frame)
                return True

            if self.state is not SessionState.OPEN:
                return False

            await self.upstream.send(frame)
            self.frames_up += 1
            return True

    async def _notify(self, frame: Frame) -> None:
        for observer in list(self._observers):
            try:
                result = observer(self, frame)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                print(f"[Relay] {self.id}: observer failed: {e}", file=sys.stderr)

    async def _frame_error(self, side: str, error: FrameError) -> None:
        print(f"[Relay] {self.id}: bad {side} frame: {error}", file=sys.stderr)
        await self._emit("on_frame_error", {"side": side, "error": str(error)})

    async def _emit(self, hook: str, ctx: dict) -> None:
        if self._hooks is None:
            return
        ctx = {"session_id": self.id, **ctx}
        await self._hooks(hook, ctx)
