"""Sandbox plugin - runs operator-supplied plugin code out of process.

Priority: 20 (after config and logger)
Capability: sandbox

Each request spawns a fresh `python -I -B runner.py` in its own session and
a temporary directory, with a stripped environment and resource limits.
The runner confines itself before plugin code runs (see runner.py); when
sandbox.user is set the child also runs under that unprivileged account.
Nothing is shared between runs, and a child never outlives its request.
"""

import asyncio
import json
import math
import os
import shutil
import signal
import sys
import tempfile
from pathlib import Path
from typing import Any, Optional

from ..base import Plugin, PluginMeta
from ..interfaces import ExecutionError, SandboxProvider, ValidationResult

RUNNER_PATH = Path(__file__).parent / "runner.py"

# Environment variables the child may see. Credentials are never passed.
PASSTHROUGH_ENV = (
    "PATH",
    "LANG",
    "LC_ALL",
    "SSL_CERT_FILE",
    "SSL_CERT_DIR",
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "NO_PROXY",
)


def validate_code(code: str) -> ValidationResult:
    """Syntax-only check of plugin code. Never executes it."""
    try:
        compile(code, "<plugin>", "exec")
    except SyntaxError as e:
        detail = e.msg
        if e.lineno:
            detail = f"{detail} (line {e.lineno})"
        return ValidationResult(valid=False, error_detail=detail)
    except ValueError as e:
        # e.g. source contains null bytes
        return ValidationResult(valid=False, error_detail=str(e))
    return ValidationResult(valid=True)


class SandboxPlugin(Plugin, SandboxProvider):
    """Out-of-process executor for plugin code."""

    meta = PluginMeta(
        id="sandbox",
        version="1.0.0",
        capabilities=["sandbox"],
        dependencies=["config"],
        priority=20,
    )

    def __init__(self):
        self._python: str = sys.executable
        self._declaration_timeout: float = 5.0
        self._invocation_timeout: Optional[float] = 30.0
        self._allowed_modules: list[str] = []
        self._memory_limit_mb: int = 1024
        self._user: Optional[str] = None

    def configure(self, config: dict) -> None:
        sandbox_config = config.get("sandbox", {}) or {}
        self._python = sandbox_config.get("python") or sys.executable
        self._declaration_timeout = float(sandbox_config.get("declaration_timeout", 5.0))
        # 0 disables the limit for invocations
        invocation_timeout = float(sandbox_config.get("invocation_timeout", 30.0))
        self._invocation_timeout = invocation_timeout or None
        self._allowed_modules = list(sandbox_config.get("allowed_modules", []))
        # 0 disables the address space limit
        self._memory_limit_mb = int(sandbox_config.get("memory_limit_mb", 1024))
        self._user = sandbox_config.get("user") or None

    async def start(self) -> None:
        limit = f"{self._invocation_timeout}s" if self._invocation_timeout else "none"
        print(f"[Sandbox] Ready, invocation timeout={limit}", file=sys.stderr)

    async def stop(self) -> None:
        """Nothing to clean up."""
        pass

    # --- SandboxProvider Interface ---

    def validate(self, code: str) -> ValidationResult:
        return validate_code(code)

    async def extract_declarations(self, code: str, label: str = "plugin") -> list[dict]:
        """Collect the declarations plugin code registers at top level."""
        reply = await self._run(
            {"mode": "declarations", "code": code},
            timeout=self._declaration_timeout,
            label=label,
        )
        declarations = reply.get("declarations")
        if not isinstance(declarations, list):
            raise ExecutionError("Sandbox returned no declaration list")
        return declarations

    async def invoke(
        self, code: str, function: str, args: dict, label: str = "plugin"
    ) -> Any:
        """Call the plugin's handle(context) for one function call."""
        reply = await self._run(
            {"mode": "invoke", "code": code, "function": function, "args": args or {}},
            timeout=self._invocation_timeout,
            label=label,
        )
        if not reply.get("defined"):
            return None
        return reply.get("output")

    # --- Process Handling ---

    def _child_env(self) -> dict:
        return {key: os.environ[key] for key in PASSTHROUGH_ENV if key in os.environ}

    def _limits(self, timeout: Optional[float]) -> dict:
        return {
            # CPU time never exceeds the wall clock budget
            "cpu_seconds": math.ceil(timeout) + 1 if timeout else None,
            "memory_mb": self._memory_limit_mb or None,
        }

    async def _run(self, request: dict, timeout: Optional[float], label: str) -> dict:
        if self._allowed_modules:
            request["allowed_modules"] = self._allowed_modules
        request["limits"] = self._limits(timeout)
        payload = json.dumps(request, default=str).encode()

        options = {}
        if self._user:
            options["user"] = self._user

        with tempfile.TemporaryDirectory(prefix="corelay-sandbox-") as workdir:
            try:
                if self._user:
                    shutil.chown(workdir, user=self._user)
                process = await asyncio.create_subprocess_exec(
                    self._python,
                    "-I",
                    "-B",
                    str(RUNNER_PATH),
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=workdir,
                    env=self._child_env(),
                    start_new_session=True,
                    **options,
                )
            except (OSError, LookupError) as e:
                # LookupError: sandbox.user does not exist
                raise ExecutionError(f"Could not start sandbox: {e}")

            try:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(payload), timeout=timeout
                )
            except asyncio.TimeoutError:
                raise ExecutionError(f"Plugin '{label}' timed out after {timeout}s")
            finally:
                # Also reached when the awaiting task is cancelled
                if process.returncode is None:
                    self._kill(process)
                    await process.wait()

        self._relay_output(label, stderr)
        return self._parse_reply(label, stdout, process.returncode)

    @staticmethod
    def _kill(process) -> None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            # Already exited, waiting reaps it
            return

    def _relay_output(self, label: str, stderr: bytes) -> None:
        for line in stderr.decode(errors="replace").splitlines():
            if line.strip():
                print(f"[Sandbox:{label}] {line}", file=sys.stderr)

    def _parse_reply(self, label: str, stdout: bytes, returncode: Optional[int]) -> dict:
        lines = [line for line in stdout.decode(errors="replace").splitlines() if line.strip()]
        if not lines:
            raise ExecutionError(
                f"Plugin '{label}' produced no result (exit code {returncode})"
            )

        try:
            reply = json.loads(lines[-1])
        except json.JSONDecodeError:
            raise ExecutionError(f"Plugin '{label}' returned a malformed result")

        if not isinstance(reply, dict):
            raise ExecutionError(f"Plugin '{label}' returned a malformed result")
        if not reply.get("ok"):
            raise ExecutionError(reply.get("error") or "Plugin execution failed")
        return reply

    # --- CLI Extension ---

    def register_commands(self, cli) -> None:
        import click

        sandbox = self

        @cli.group("sandbox")
        def sandbox_group():
            """Check and run plugin code locally."""
            pass

        @sandbox_group.command("validate")
        @click.argument("path", type=click.Path(exists=True, dir_okay=False))
        def validate_cmd(path: str):
            """Check that plugin code compiles."""
            result = sandbox.validate(Path(path).read_text())
            if result.valid:
                click.echo("Plugin code is valid ✓")
            else:
                click.echo(f"Invalid: {result.error_detail}", err=True)
                sys.exit(1)

        @sandbox_group.command("declarations")
        @click.argument("path", type=click.Path(exists=True, dir_okay=False))
        def declarations_cmd(path: str):
            """Show the declarations plugin code registers."""
            try:
                declarations = asyncio.run(
                    sandbox.extract_declarations(Path(path).read_text(), Path(path).stem)
                )
            except ExecutionError as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(1)
            click.echo(json.dumps(declarations, indent=2, ensure_ascii=False))

        @sandbox_group.command("run")
        @click.argument("path", type=click.Path(exists=True, dir_okay=False))
        @click.argument("function")
        @click.option("--args", "args_json", default="{}", help="Arguments as JSON")
        def run_cmd(path: str, function: str, args_json: str):
            """Invoke FUNCTION on plugin code and print the output."""
            try:
                args = json.loads(args_json)
            except json.JSONDecodeError as e:
                click.echo(f"Error: --args is not valid JSON: {e}", err=True)
                sys.exit(1)

            try:
                output = asyncio.run(
                    sandbox.invoke(Path(path).read_text(), function, args, Path(path).stem)
                )
            except ExecutionError as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(1)

            if output is None:
                click.echo(f"(plugin does not handle '{function}')")
            else:
                click.echo(json.dumps(output, indent=2, ensure_ascii=False, default=str))


# Factory function for plugin discovery
def create_plugin() -> SandboxPlugin:
    return SandboxPlugin()
