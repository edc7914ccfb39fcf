"""Session relay between a downstream client and the upstream model."""

from .plugin import RelayPlugin, create_plugin
from .session import RelaySession, SessionState, outbound_close_code
from .transports import FastAPIPeer, WebsocketsPeer, connect_upstream

__all__ = [
    "FastAPIPeer",
    "RelayPlugin",
    "RelaySession",
    "SessionState",
    "WebsocketsPeer",
    "connect_upstream",
    "create_plugin",
    "outbound_close_code",
]
