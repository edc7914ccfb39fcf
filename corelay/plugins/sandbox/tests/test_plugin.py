"""Tests for SandboxPlugin.

These run plugin code in real subprocesses.
"""

import asyncio
import json
import os
import sys
import textwrap

import click
import pytest
from click.testing import CliRunner

from corelay.plugins import ExecutionError

from ..plugin import SandboxPlugin, create_plugin, validate_code
from ..runner import execute, make_audit_hook, readable_roots

CLOCK = textwrap.dedent(
    """
    tools.add_declaration({
        "name": "get_time",
        "description": "Current time in a timezone",
        "parameters": {"type": "object", "properties": {"tz": {"type": "string"}}},
    })

    def handle(context):
        if context.function != "get_time":
            return None
        return {"tz": context.args.get("tz", "UTC"), "time": "12:00"}
    """
)


@pytest.fixture
def sandbox():
    plugin = SandboxPlugin()
    plugin.configure({"sandbox": {"declaration_timeout": 10, "invocation_timeout": 10}})
    return plugin


class TestValidateCode:
    """Test the syntax-only check."""

    def test_valid(self):
        result = validate_code(CLOCK)
        assert result.valid is True
        assert result.error_detail is None

    def test_syntax_error_has_line(self):
        result = validate_code("x = 1\ndef broken(:\n    pass\n")
        assert result.valid is False
        assert "(line 2)" in result.error_detail

    def test_null_bytes(self):
        result = validate_code("x = 1\x00")
        assert result.valid is False

    def test_never_executes(self, tmp_path):
        marker = tmp_path / "ran"
        result = validate_code(f"open({str(marker)!r}, 'w').write('x')")
        assert result.valid is True
        assert not marker.exists()


class TestRunnerExecute:
    """Test the runner in-process."""

    def test_declarations_in_order(self):
        code = CLOCK + textwrap.dedent(
            """
            DECLARATIONS = [{"name": "get_date"}]
            tools.addDeclaration({"name": "get_zone"})
            """
        )
        reply = execute({"mode": "declarations", "code": code})

        assert reply["ok"] is True
        assert [d["name"] for d in reply["declarations"]] == [
            "get_time",
            "get_zone",
            "get_date",
        ]

    def test_handle_not_called_for_declarations(self):
        code = "def handle(context):\n    raise RuntimeError('called')\n"
        reply = execute({"mode": "declarations", "code": code})
        assert reply == {"ok": True, "declarations": []}

    def test_invoke(self):
        reply = execute(
            {"mode": "invoke", "code": CLOCK, "function": "get_time", "args": {"tz": "CET"}}
        )
        assert reply == {
            "ok": True,
            "defined": True,
            "output": {"tz": "CET", "time": "12:00"},
        }

    def test_decline(self):
        reply = execute({"mode": "invoke", "code": CLOCK, "function": "other", "args": {}})
        assert reply["defined"] is False

    def test_blocked_import(self):
        with pytest.raises(ImportError, match="'subprocess'"):
            execute({"mode": "invoke", "code": "import subprocess", "function": "f"})

    def test_extra_allowed_module(self):
        code = "import os.path\ndef handle(context):\n    return os.path.join('a', 'b')\n"
        reply = execute(
            {"mode": "invoke", "code": code, "function": "f", "allowed_modules": ["os"]}
        )
        assert reply["output"] == "a/b" or reply["output"] == "a\\b"

    def test_open_not_available(self):
        with pytest.raises(NameError):
            execute({"mode": "invoke", "code": "open('x')", "function": "f"})


class TestAuditHook:
    """Test the confinement rules without installing the hook."""

    @pytest.fixture
    def dirs(self, tmp_path):
        root = tmp_path.resolve()
        workdir, lib, private = root / "work", root / "lib", root / "private"
        for path in (workdir, lib, private):
            path.mkdir()
        return workdir, lib, private

    @pytest.fixture
    def hook(self, dirs):
        workdir, lib, _ = dirs
        return make_audit_hook(str(workdir), (str(lib), str(workdir)))

    def test_reads_below_library_roots(self, hook, dirs):
        _, lib, _ = dirs
        hook("open", (str(lib / "module.py"), "r", 0))
        hook("open", (os.fsencode(lib / "module.py"), "rb", 0))
        hook("os.listdir", (str(lib),))

    def test_reads_elsewhere_refused(self, hook, dirs):
        _, _, private = dirs
        with pytest.raises(PermissionError, match="not allowed"):
            hook("open", (str(private / "secret.txt"), "r", 0))
        with pytest.raises(PermissionError):
            hook("os.scandir", (str(private),))

    def test_writes_only_in_workdir(self, hook, dirs):
        workdir, lib, _ = dirs
        hook("open", (str(workdir / "scratch.txt"), "w", 0))
        with pytest.raises(PermissionError):
            hook("open", (str(lib / "module.py"), "a", 0))
        with pytest.raises(PermissionError):
            hook("open", (str(lib / "module.py"), None, os.O_WRONLY | os.O_CREAT))

    def test_symlink_out_of_workdir_refused(self, hook, dirs):
        workdir, _, private = dirs
        (workdir / "link").symlink_to(private)
        with pytest.raises(PermissionError):
            hook("open", (str(workdir / "link" / "secret.txt"), "r", 0))

    def test_relative_and_custom_paths_refused(self, hook):
        class Shifty:
            def __fspath__(self):
                return "/etc/hostname"

        with pytest.raises(PermissionError, match="relative"):
            hook("open", ("secret.txt", "r", 0))
        with pytest.raises(PermissionError, match="unsupported path type"):
            hook("open", (Shifty(), "r", 0))

    def test_file_descriptors_pass(self, hook):
        hook("open", (2, "w", 0))

    @pytest.mark.parametrize(
        "event",
        ["os.system", "os.exec", "os.fork", "subprocess.Popen", "ctypes.dlopen", "os.remove"],
    )
    def test_denied_events(self, hook, event):
        with pytest.raises(PermissionError, match=event):
            hook(event, ())

    def test_imports(self, hook):
        hook("import", ("json", None, [], [], []))
        with pytest.raises(PermissionError, match="'ctypes.util'"):
            hook("import", ("ctypes.util", None, [], [], []))

    def test_unrelated_events_pass(self, hook):
        hook("exec", (None,))
        hook("socket.connect", (None, ("127.0.0.1", 80)))

    def test_readable_roots(self, tmp_path):
        roots = readable_roots(str(tmp_path))

        assert os.path.realpath(sys.prefix) in roots
        assert os.path.realpath(str(tmp_path)) in roots
        assert os.sep not in roots


class TestSandboxPlugin:
    """Test SandboxPlugin with real subprocesses."""

    def test_create_plugin(self):
        plugin = create_plugin()
        assert isinstance(plugin, SandboxPlugin)
        assert "sandbox" in plugin.meta.capabilities

    def test_configure_timeouts(self):
        plugin = SandboxPlugin()
        plugin.configure({"sandbox": {"declaration_timeout": 2, "invocation_timeout": 0}})
        assert plugin._declaration_timeout == 2.0
        assert plugin._invocation_timeout is None

    def test_extract_declarations(self, sandbox):
        declarations = asyncio.run(sandbox.extract_declarations(CLOCK, "clock"))
        assert [d["name"] for d in declarations] == ["get_time"]
        assert declarations[0]["description"] == "Current time in a timezone"

    def test_invoke(self, sandbox):
        output = asyncio.run(sandbox.invoke(CLOCK, "get_time", {"tz": "CET"}, "clock"))
        assert output == {"tz": "CET", "time": "12:00"}

    def test_invoke_decline(self, sandbox):
        assert asyncio.run(sandbox.invoke(CLOCK, "other", {}, "clock")) is None

    def test_invoke_without_handler(self, sandbox):
        assert asyncio.run(sandbox.invoke("x = 1", "get_time", {}, "empty")) is None

    def test_async_handler(self, sandbox):
        code = textwrap.dedent(
            """
            async def handle(context):
                await sleep(0)
                return context["args"]["n"] * 2
            """
        )
        assert asyncio.run(sandbox.invoke(code, "double", {"n": 21}, "math")) == 42

    def test_print_does_not_corrupt_reply(self, sandbox, capsys):
        code = textwrap.dedent(
            """
            print("hello from plugin")
            console.log("logged")

            def handle(context):
                print("handling")
                return "done"
            """
        )
        assert asyncio.run(sandbox.invoke(code, "f", {}, "noisy")) == "done"
        err = capsys.readouterr().err
        assert "[Sandbox:noisy] hello from plugin" in err

    def test_runtime_error(self, sandbox):
        code = "def handle(context):\n    return 1 / 0\n"
        with pytest.raises(ExecutionError, match="ZeroDivisionError"):
            asyncio.run(sandbox.invoke(code, "f", {}, "broken"))

    def test_blocked_import(self, sandbox):
        with pytest.raises(ExecutionError, match="ImportError"):
            asyncio.run(sandbox.extract_declarations("import socket", "net"))

    def test_declaration_timeout(self):
        plugin = SandboxPlugin()
        plugin.configure({"sandbox": {"declaration_timeout": 0.5}})
        code = "import time\ntime.sleep(10)\n"

        with pytest.raises(ExecutionError, match="timed out"):
            asyncio.run(plugin.extract_declarations(code, "slow"))

    def test_environment_is_stripped(self, sandbox, monkeypatch):
        monkeypatch.setenv("CORELAY_TEST_SECRET", "hunter2")
        sandbox._allowed_modules = ["os"]
        code = "import os\ndef handle(context):\n    return os.environ.get('CORELAY_TEST_SECRET', 'absent')\n"

        assert asyncio.run(sandbox.invoke(code, "f", {}, "env")) == "absent"

    def test_runs_are_isolated(self, sandbox):
        code = textwrap.dedent(
            """
            counter = []

            def handle(context):
                counter.append(1)
                return len(counter)
            """
        )
        assert asyncio.run(sandbox.invoke(code, "f", {}, "state")) == 1
        assert asyncio.run(sandbox.invoke(code, "f", {}, "state")) == 1

    def test_missing_interpreter(self):
        plugin = SandboxPlugin()
        plugin.configure({"sandbox": {"python": "/nonexistent/python"}})
        with pytest.raises(ExecutionError, match="Could not start sandbox"):
            asyncio.run(plugin.invoke("x = 1", "f", {}, "x"))


class TestConfinement:
    """Plugin code cannot reach the host through objects in its namespace."""

    def test_cannot_read_host_file(self, sandbox, tmp_path):
        secret = tmp_path / "secret.txt"
        secret.write_text("TOPSECRET")
        code = textwrap.dedent(
            f"""
            def handle(context):
                real = fetch.__globals__["builtins"]
                return real.open({str(secret)!r}).read()
            """
        )

        with pytest.raises(ExecutionError, match="PermissionError") as exc_info:
            asyncio.run(sandbox.invoke(code, "f", {}, "snoop"))
        assert "TOPSECRET" not in str(exc_info.value)

    def test_cannot_write_host_file(self, sandbox, tmp_path):
        target = tmp_path / "planted.txt"
        code = textwrap.dedent(
            f"""
            def handle(context):
                real = console.log.__globals__["builtins"]
                real.open({str(target)!r}, "w").write("x")
                return "written"
            """
        )

        with pytest.raises(ExecutionError, match="PermissionError"):
            asyncio.run(sandbox.invoke(code, "f", {}, "plant"))
        assert not target.exists()

    @pytest.mark.parametrize(
        "call",
        [
            "real.__import__('os').system('true')",
            "real.__import__('subprocess').run(['true'])",
            "real.__import__('os').remove('/tmp')",
        ],
    )
    def test_cannot_escape_the_process(self, sandbox, call):
        code = f"def handle(context):\n    real = fetch.__globals__['builtins']\n    return {call}\n"

        with pytest.raises(ExecutionError, match="PermissionError"):
            asyncio.run(sandbox.invoke(code, "f", {}, "escape"))

    def test_scratch_files_in_workdir(self, sandbox):
        code = textwrap.dedent(
            """
            def handle(context):
                real = fetch.__globals__["builtins"]
                os = real.__import__("os")
                path = os.path.join(os.getcwd(), "scratch.txt")
                with real.open(path, "w") as f:
                    f.write("kept")
                with real.open(path) as f:
                    return f.read()
            """
        )
        assert asyncio.run(sandbox.invoke(code, "f", {}, "scratch")) == "kept"

    def test_cancel_kills_child(self, monkeypatch):
        plugin = SandboxPlugin()
        plugin.configure({"sandbox": {"invocation_timeout": 0}})
        spawned = []
        create = asyncio.create_subprocess_exec

        async def recording_exec(*args, **kwargs):
            process = await create(*args, **kwargs)
            spawned.append(process)
            return process

        monkeypatch.setattr(asyncio, "create_subprocess_exec", recording_exec)
        code = "import time\n\ndef handle(context):\n    time.sleep(60)\n"

        async def scenario():
            task = asyncio.create_task(plugin.invoke(code, "f", {}, "stuck"))
            while not spawned:
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return spawned[0]

        process = asyncio.run(scenario())

        assert process.returncode is not None

    def test_limits_follow_timeout(self):
        plugin = SandboxPlugin()
        plugin.configure({"sandbox": {"memory_limit_mb": 0}})

        assert plugin._limits(0.5) == {"cpu_seconds": 2, "memory_mb": None}
        assert plugin._limits(None)["cpu_seconds"] is None

    def test_unknown_user(self):
        plugin = SandboxPlugin()
        plugin.configure({"sandbox": {"user": "corelay-no-such-user"}})

        with pytest.raises(ExecutionError, match="Could not start sandbox"):
            asyncio.run(plugin.invoke("x = 1", "f", {}, "x"))


class TestSandboxCommands:
    """Test the sandbox CLI group."""

    @pytest.fixture
    def cli(self, sandbox):
        @click.group()
        def cli():
            pass

        sandbox.register_commands(cli)
        return cli

    @pytest.fixture
    def plugin_file(self, tmp_path):
        path = tmp_path / "clock.py"
        path.write_text(CLOCK)
        return path

    def test_validate(self, cli, plugin_file):
        result = CliRunner().invoke(cli, ["sandbox", "validate", str(plugin_file)])
        assert result.exit_code == 0
        assert "valid" in result.output

    def test_validate_invalid(self, cli, tmp_path):
        path = tmp_path / "bad.py"
        path.write_text("def (")
        result = CliRunner().invoke(cli, ["sandbox", "validate", str(path)])
        assert result.exit_code == 1

    def test_declarations(self, cli, plugin_file):
        result = CliRunner().invoke(cli, ["sandbox", "declarations", str(plugin_file)])
        assert result.exit_code == 0
        assert json.loads(result.output)[0]["name"] == "get_time"

    def test_run(self, cli, plugin_file):
        result = CliRunner().invoke(
            cli, ["sandbox", "run", str(plugin_file), "get_time", "--args", '{"tz": "CET"}']
        )
        assert result.exit_code == 0
        assert json.loads(result.output) == {"tz": "CET", "time": "12:00"}

    def test_run_declined(self, cli, plugin_file):
        result = CliRunner().invoke(cli, ["sandbox", "run", str(plugin_file), "other"])
        assert result.exit_code == 0
        assert "does not handle 'other'" in result.output
