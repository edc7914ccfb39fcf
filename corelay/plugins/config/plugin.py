"""Config plugin - loads and provides configuration.

Priority: 01 (very early, provides config to other plugins)
"""

import os
import re
import sys
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Any

import yaml

from ..base import Plugin, PluginMeta

DEFAULT_UPSTREAM_URL = "wss://generativelanguage.googleapis.com"


def _expand_env_vars(value: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in strings."""
    if isinstance(value, str):
        pattern = r"\$\{([^}:]+)(?::-([^}]*))?\}"

        def replacer(match):
            var_name = match.group(1)
            default = match.group(2)
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            elif default is not None:
                return default
            else:
                return ""

        return re.sub(pattern, replacer, value)
    elif isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    else:
        return value


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


@dataclass
class CorelayConfig:
    """Parsed configuration object."""

    # Which plugins are enabled
    enabled_plugins: list[str] = field(default_factory=list)
    disabled_plugins: list[str] = field(default_factory=list)

    # HTTP / WebSocket server
    host: str = "127.0.0.1"
    port: int = 8787

    # Relay
    upstream_url: str = DEFAULT_UPSTREAM_URL
    api_key: Optional[str] = None
    connect_timeout: float = 30.0
    max_pending_messages: Optional[int] = None  # None = unbounded
    bridge_tool_calls: bool = False

    # Sandbox
    declaration_timeout: float = 5.0
    invocation_timeout: float = 30.0
    memory_limit_mb: int = 1024  # 0 = no address space limit
    sandbox_user: Optional[str] = None

    # Capabilities
    store_path: Optional[Path] = None

    # Logging
    log_level: str = "info"

    # Raw config for plugin access
    _raw: dict = field(default_factory=dict)

    def get_plugin_config(self, plugin_id: str) -> dict:
        """Get config section for a specific plugin."""
        return self._raw.get(plugin_id, {}) or {}

    @classmethod
    def from_dict(cls, data: dict) -> "CorelayConfig":
        """Create config from dictionary."""
        data = _expand_env_vars(data)

        plugins_section = data.get("plugins", {}) or {}
        server = data.get("server", {}) or {}
        relay = data.get("relay", {}) or {}
        sandbox = data.get("sandbox", {}) or {}
        capabilities = data.get("capabilities", {}) or {}
        logger = data.get("logger", {}) or {}

        store_path = capabilities.get("store_path")

        return cls(
            enabled_plugins=plugins_section.get("enabled", []),
            disabled_plugins=plugins_section.get("disabled", []),
            host=server.get("host", "127.0.0.1"),
            port=int(server.get("port", 8787)),
            upstream_url=relay.get("upstream_url", DEFAULT_UPSTREAM_URL),
            api_key=relay.get("api_key") or None,
            connect_timeout=float(relay.get("connect_timeout", 30.0)),
            max_pending_messages=_optional_int(relay.get("max_pending_messages")),
            bridge_tool_calls=bool(relay.get("bridge_tool_calls", False)),
            declaration_timeout=float(sandbox.get("declaration_timeout", 5.0)),
            invocation_timeout=float(sandbox.get("invocation_timeout", 30.0)),
            memory_limit_mb=int(sandbox.get("memory_limit_mb", 1024)),
            sandbox_user=sandbox.get("user") or None,
            store_path=Path(store_path).expanduser() if store_path else None,
            log_level=logger.get("level", "info"),
            _raw=data,
        )

    @classmethod
    def load(cls, path: Path) -> "CorelayConfig":
        """Load config from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)


def config_paths() -> tuple[Path, Path]:
    """Home and local config paths, in load order."""
    return Path.home() / ".corelay" / "corelay.yml", Path("corelay.yml")


class ConfigPlugin(Plugin):
    """Configuration management plugin."""

    meta = PluginMeta(
        id="config",
        version="1.0.0",
        capabilities=["config"],
        dependencies=[],
        priority=1,  # Load first
    )

    def __init__(self):
        self._config: Optional[CorelayConfig] = None
        self._config_path: Optional[Path] = None

    def configure(self, config: dict) -> None:
        """Use the dict handed in by the CLI, else load the config files."""
        if config:
            self._config = CorelayConfig.from_dict(config)
        else:
            self._config = self._load_config_file()

    async def start(self) -> None:
        """Config is already loaded in configure()."""
        if self._config:
            print(f"[Config] Upstream: {self._config.upstream_url}", file=sys.stderr)

    async def stop(self) -> None:
        """Nothing to clean up."""
        pass

    def _load_config_file(self) -> CorelayConfig:
        """Load configuration from file(s). Local overrides home."""
        config = CorelayConfig()

        for path in config_paths():
            if path.exists():
                config = CorelayConfig.load(path)
                self._config_path = path

        return config

    @property
    def config_path(self) -> Optional[Path]:
        return self._config_path

    def get_config(self) -> CorelayConfig:
        """Get the loaded configuration."""
        if self._config is None:
            self._config = self._load_config_file()
        return self._config

    def get_plugin_config(self, plugin_id: str) -> dict:
        """Get config section for a specific plugin."""
        if self._config is None:
            return {}
        return self._config.get_plugin_config(plugin_id)


# Factory function for plugin discovery
def create_plugin() -> ConfigPlugin:
    return ConfigPlugin()
