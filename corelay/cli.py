"""corelay CLI - command line interface for the relay server."""

import json
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Any, Optional

import click

from corelay import __version__


# --- Config Utilities ---


def get_config_paths() -> tuple[Path, Path]:
    """Get home and local config paths."""
    from corelay.plugins.config import config_paths

    return config_paths()


def load_merged_config():
    """Load config with local overriding home."""
    from corelay.plugins.config import load_config

    return load_config()


def _find_config_path(explicit_path: Optional[str] = None) -> Path:
    """Find config file path (same logic as config loading)."""
    if explicit_path:
        return Path(explicit_path)

    home_config, local_config = get_config_paths()
    if local_config.exists():
        return local_config
    if home_config.exists():
        return home_config

    # Default to home config for new files
    return home_config


def _read_raw_config(path: Path) -> dict:
    import yaml

    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


# --- PID File ---


def get_pid_file() -> Path:
    """Get path to PID file."""
    return Path.home() / ".corelay" / "corelay.pid"


def read_pid() -> Optional[int]:
    """Read PID from file, return None if not found or stale."""
    pid_file = get_pid_file()
    if not pid_file.exists():
        return None

    try:
        pid = int(pid_file.read_text().strip())
        # Check if process exists
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        return None


def write_pid(pid: int) -> None:
    """Write PID to file."""
    pid_file = get_pid_file()
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(pid))


def remove_pid() -> None:
    """Remove PID file."""
    pid_file = get_pid_file()
    if pid_file.exists():
        pid_file.unlink()


# --- CLI Groups ---


@click.group()
@click.version_option(version=__version__, prog_name="corelay")
def cli():
    """corelay - WebSocket relay with pluggable tool calls."""
    pass


# --- Core Commands ---


@cli.command()
@click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")
@click.option("--host", "-h", default=None, help="Bind address (default: server.host)")
@click.option("--port", "-p", type=int, default=None, help="Port (default: server.port)")
@click.option("--debug", "-d", is_flag=True, help="Enable debug logging")
def run(config: Optional[str], host: Optional[str], port: Optional[int], debug: bool):
    """Start the relay server."""
    # Check if already running
    existing_pid = read_pid()
    if existing_pid:
        click.echo(f"corelay already running (PID {existing_pid})", err=True)
        click.echo("Use 'corelay restart' to restart or kill the process first.", err=True)
        sys.exit(1)

    # Write our PID
    write_pid(os.getpid())

    try:
        import uvicorn

        from corelay import plugins as plugin_system
        from corelay.plugins.config import CorelayConfig, _expand_env_vars
        from corelay.server import create_app

        # Load config file first (for plugin filtering)
        config_path = _find_config_path(config)
        raw_config = _read_raw_config(config_path)
        if raw_config:
            print(f"[Config] Loaded from {config_path}", file=sys.stderr)
        raw_config = _expand_env_vars(raw_config)

        # Override logger level if --debug flag
        if debug:
            raw_config.setdefault("logger", {})
            raw_config["logger"]["level"] = "debug"

        try:
            registry = plugin_system.load_plugins(
                config=raw_config, registry=plugin_system.PluginRegistry()
            )
        except plugin_system.PluginError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Loaded {len(registry.all_plugins())} component(s)", err=True)

        cfg = CorelayConfig.from_dict(raw_config)
        app = create_app(registry)

        # Set up restart signal handler
        def handle_restart(signum, frame):
            click.echo("\nRestart signal received, restarting...", err=True)
            remove_pid()
            os.execv(sys.executable, [sys.executable] + sys.argv)

        signal.signal(signal.SIGUSR1, handle_restart)

        uvicorn.run(
            app,
            host=host or cfg.host,
            port=port or cfg.port,
            log_level="debug" if debug else "info",
        )
    finally:
        remove_pid()


@cli.command()
def restart():
    """Restart the running relay server."""
    pid = read_pid()
    if not pid:
        click.echo("corelay is not running.", err=True)
        sys.exit(1)

    try:
        os.kill(pid, signal.SIGUSR1)
        click.echo(f"Restart signal sent to PID {pid}")
    except ProcessLookupError:
        click.echo("Process not found, removing stale PID file.", err=True)
        remove_pid()
        sys.exit(1)


def _fetch_health(host: str, port: int) -> Optional[dict]:
    import httpx

    if host in ("0.0.0.0", "::"):
        host = "127.0.0.1"
    try:
        response = httpx.get(f"http://{host}:{port}/health", timeout=2.0)
        response.raise_for_status()
        return response.json()
    except (httpx.HTTPError, ValueError):
        return None


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def status(as_json: bool):
    """Show relay server status."""
    pid = read_pid()

    status_data = {
        "running": pid is not None,
        "pid": pid,
    }

    if pid:
        cfg = load_merged_config()
        health = _fetch_health(cfg.host, cfg.port)
        status_data["address"] = f"{cfg.host}:{cfg.port}"
        status_data["healthy"] = health is not None
        status_data["sessions"] = health.get("sessions") if health else None

    if as_json:
        click.echo(json.dumps(status_data, indent=2))
    else:
        click.echo("corelay Status")
        click.echo("──────────────")
        if status_data["running"]:
            click.echo(f"State:    Running (PID {status_data['pid']})")
            click.echo(f"Address:  {status_data['address']}")
            if status_data["healthy"]:
                click.echo(f"Sessions: {status_data['sessions']}")
            else:
                click.echo("Health:   not responding")
        else:
            click.echo("State:    Not running")


@cli.command("plugins")
def list_components():
    """List host components and their capabilities."""
    from corelay.plugins import get_registry

    registry = get_registry()
    components = registry.list_plugins()
    if not components:
        click.echo("No components loaded.")
        return

    click.echo("\n📦 Components:\n")
    for info in components:
        caps = ", ".join(info["capabilities"]) if info["capabilities"] else "none"
        click.echo(f"  {info['id']} v{info['version']} (priority {info['priority']})")
        click.echo(f"    Capabilities: {caps}")
        if info["dependencies"]:
            click.echo(f"    Depends on: {', '.join(info['dependencies'])}")
        click.echo()


# --- Config Commands ---


@cli.group()
def config():
    """Configuration commands."""
    pass


def _mask_secrets(data: dict, parent_key: str = "") -> dict:
    """Mask sensitive values in config dict."""
    secret_keys = {"api_key", "secret", "password", "token", "key"}
    result = {}
    for k, v in data.items():
        if isinstance(v, dict):
            result[k] = _mask_secrets(v, k)
        elif k in secret_keys and isinstance(v, str) and len(v) > 4:
            result[k] = f"***{v[-4:]}"
        else:
            result[k] = v
    return result


@config.command("show")
@click.option("--reveal", is_flag=True, help="Show secrets unmasked")
def config_show(reveal: bool):
    """Show current configuration.

    Keys shown can be used with 'config get/set' commands.
    Secrets are masked by default (use --reveal to show).
    """
    import yaml

    cfg = load_merged_config()

    data = cfg._raw.copy() if cfg._raw else {}

    if not reveal:
        data = _mask_secrets(data)

    if data:
        click.echo(yaml.dump(data, default_flow_style=False, sort_keys=False))
    else:
        click.echo("# No configuration loaded")
        click.echo("# Create ~/.corelay/corelay.yml or ./corelay.yml")

    click.echo("# Use 'corelay config get <key>' or 'corelay config set <key> <value>'")


@config.command("path")
def config_path_cmd():
    """Show which config file is used."""
    path = _find_config_path()
    suffix = "" if path.exists() else " (does not exist yet)"
    click.echo(f"{path}{suffix}")


DEFAULT_CONFIG = """# corelay configuration
server:
  host: 127.0.0.1
  port: 8787

relay:
  upstream_url: wss://generativelanguage.googleapis.com
  api_key: ${GEMINI_API_KEY}
  connect_timeout: 30
  # max_pending_messages: 256
  bridge_tool_calls: false

sandbox:
  declaration_timeout: 5
  invocation_timeout: 30
  memory_limit_mb: 1024
  # user: nobody    # run plugin code as this account (host must be root)

tools:
  enabled: [google_search, weather]

# capabilities:
#   store_path: ~/.corelay/plugins.yml
"""


@config.command("edit")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(),
    help="Config file to edit",
)
def config_edit(config_path: Optional[str]):
    """Edit config in $EDITOR."""
    editor = os.environ.get("EDITOR", "vi")
    path = _find_config_path(config_path)

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(DEFAULT_CONFIG)
        click.echo(f"Created new config at {path}", err=True)

    subprocess.run([editor, str(path)])


def _parse_value(value: str) -> Any:
    """Interpret a CLI value as bool, int, float or string."""
    if value.lower() == "true":
        return True
    if value.lower() == "false":
        return False
    if value.isdigit():
        return int(value)
    try:
        return float(value)
    except ValueError:
        return value


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(),
    help="Config file (default: ./corelay.yml or ~/.corelay/corelay.yml)",
)
def config_set(key: str, value: str, config_path: Optional[str]):
    """Set a configuration value.

    KEY uses dot notation for nested values (e.g., relay.connect_timeout).

    Examples:
        corelay config set relay.connect_timeout 10
        corelay config set relay.bridge_tool_calls true
        corelay config set server.port 9000
    """
    import yaml

    path = _find_config_path(config_path)
    cfg = _read_raw_config(path)
    parsed_value = _parse_value(value)

    # Navigate to nested key and set value
    keys = key.split(".")
    current = cfg
    for k in keys[:-1]:
        if k not in current:
            current[k] = {}
        elif not isinstance(current[k], dict):
            click.echo(f"Error: {k} is not a section, cannot set nested key", err=True)
            sys.exit(1)
        current = current[k]

    old_value = current.get(keys[-1])
    current[keys[-1]] = parsed_value

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(cfg, f, default_flow_style=False, sort_keys=False)

    if old_value is not None:
        click.echo(f"Updated {key}: {old_value} → {parsed_value}")
    else:
        click.echo(f"Set {key} = {parsed_value}")


@config.command("get")
@click.argument("key")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(),
    help="Config file (default: ./corelay.yml or ~/.corelay/corelay.yml)",
)
def config_get(key: str, config_path: Optional[str]):
    """Get a configuration value.

    KEY uses dot notation for nested values (e.g., relay.upstream_url).
    """
    path = _find_config_path(config_path)

    if not path.exists():
        click.echo(f"Config file not found: {path}", err=True)
        sys.exit(1)

    cfg = _read_raw_config(path)

    # Navigate to nested key
    keys = key.split(".")
    current = cfg
    for k in keys:
        if not isinstance(current, dict) or k not in current:
            click.echo(f"Key not found: {key}", err=True)
            sys.exit(1)
        current = current[k]

    click.echo(current)


def validate_config(cfg) -> tuple[list[str], list[str]]:
    """Check a CorelayConfig. Returns (errors, warnings)."""
    errors = []
    warnings = []

    if not cfg.upstream_url.startswith(("ws://", "wss://")):
        errors.append(f"relay.upstream_url must be a ws:// or wss:// URL: {cfg.upstream_url}")
    if cfg.connect_timeout < 0:
        errors.append("relay.connect_timeout must not be negative")
    if cfg.max_pending_messages is not None and cfg.max_pending_messages < 1:
        errors.append("relay.max_pending_messages must be at least 1")
    if cfg.declaration_timeout <= 0:
        errors.append("sandbox.declaration_timeout must be positive")
    if cfg.invocation_timeout < 0:
        errors.append("sandbox.invocation_timeout must not be negative")
    if cfg.memory_limit_mb < 0:
        errors.append("sandbox.memory_limit_mb must not be negative")
    if not 0 < cfg.port < 65536:
        errors.append(f"server.port out of range: {cfg.port}")

    if not cfg.api_key:
        warnings.append("relay.api_key not set, clients must pass ?key=")

    return errors, warnings


@config.command("validate")
def config_validate():
    """Validate configuration."""
    try:
        cfg = load_merged_config()
    except Exception as e:
        click.echo(f"Error loading config: {e}", err=True)
        sys.exit(1)

    errors, warnings = validate_config(cfg)

    for warning in warnings:
        click.echo(f"Warning: {warning}", err=True)

    if errors:
        click.echo("Configuration errors:", err=True)
        for err in errors:
            click.echo(f"  - {err}", err=True)
        sys.exit(1)

    click.echo("Configuration is valid ✓")


def register_plugin_commands():
    """Load components and let them register CLI commands."""
    import yaml

    from corelay.plugins import PluginError, get_registry, load_plugins
    from corelay.plugins.config import _expand_env_vars

    try:
        raw_config = _expand_env_vars(_read_raw_config(_find_config_path()))
        registry = load_plugins(config=raw_config)
    except (PluginError, OSError, ValueError, yaml.YAMLError) as e:
        click.echo(f"Warning: components not loaded: {e}", err=True)
        registry = get_registry()

    for plugin in registry.all_plugins():
        try:
            plugin.register_commands(cli)
        except Exception as e:
            # Don't fail CLI if plugin command registration fails
            click.echo(
                f"Warning: Plugin {plugin.meta.id} command registration failed: {e}",
                err=True,
            )


def main():
    """Entry point."""
    # Let plugins register their commands
    register_plugin_commands()

    # Run CLI
    cli()


if __name__ == "__main__":
    main()
