"""Sandbox runner - executes one plugin request in an isolated interpreter.

Started by the sandbox plugin as `python -I runner.py`. Reads one JSON
request from stdin and writes one JSON reply line to stdout. Everything the
plugin prints goes to stderr, which the host relays to its log.

Request:
    {"mode": "declarations" | "invoke", "code": "...",
     "function": "name", "args": {...}, "allowed_modules": [...],
     "limits": {"cpu_seconds": 6, "memory_mb": 1024, ...}}

Reply:
    {"ok": true, "declarations": [...]}
    {"ok": true, "defined": true, "output": ...}
    {"ok": false, "error": "TypeError: ..."}

Plugin code sees `console`, `fetch`, `sleep`, `gather`, `context` and
`tools`, curated builtins and an import allowlist. The namespace only narrows
what plugin code is offered: the objects in it still lead back to the real
interpreter. Before plugin code runs, main() therefore applies resource
limits and installs an audit hook (PEP 578) that cannot be removed. The hook
refuses file access outside the interpreter's own library directories and
the per-run working directory, and it refuses process creation, file
system changes, ctypes and gc introspection.

This file must not import corelay: it runs outside the host process.
"""

import asyncio
import builtins
import inspect
import json as jsonlib
import os
import pathlib
import resource
import sys
import traceback
import zoneinfo

ALLOWED_MODULES = {
    "base64",
    "collections",
    "dataclasses",
    "datetime",
    "decimal",
    "enum",
    "fractions",
    "functools",
    "hashlib",
    "itertools",
    "json",
    "math",
    "operator",
    "random",
    "re",
    "statistics",
    "string",
    "textwrap",
    "time",
    "typing",
    "uuid",
    "zoneinfo",
}

BLOCKED_BUILTINS = {
    "__import__",
    "breakpoint",
    "compile",
    "eval",
    "exec",
    "exit",
    "globals",
    "help",
    "input",
    "locals",
    "memoryview",
    "open",
    "quit",
    "vars",
}


def make_import(allowed: set):
    def guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
        if level != 0:
            raise ImportError("relative imports are not allowed in plugins")
        root = name.split(".")[0]
        if root not in allowed:
            raise ImportError(f"import of '{name}' is not allowed in plugins")
        return builtins.__import__(name, globals, locals, fromlist, level)

    return guarded_import


def make_builtins(allowed: set) -> dict:
    safe = {
        name: value
        for name, value in vars(builtins).items()
        if name not in BLOCKED_BUILTINS
    }
    safe["__import__"] = make_import(allowed)
    safe["print"] = _stderr_print
    return safe


def _stderr_print(*args, **kwargs):
    kwargs["file"] = sys.stderr
    kwargs.setdefault("flush", True)
    print(*args, **kwargs)


class Console:
    """console.log and friends. Output goes to the host log."""

    def _write(self, level: str, args) -> None:
        _stderr_print(f"[{level}]", *args)

    def log(self, *args):
        self._write("log", args)

    def info(self, *args):
        self._write("info", args)

    def debug(self, *args):
        self._write("debug", args)

    def warn(self, *args):
        self._write("warn", args)

    warning = warn

    def error(self, *args):
        self._write("error", args)


class Context(dict):
    """Call context. Supports both context.args and context["args"]."""

    def __getattr__(self, key):
        try:
            return self[key]
        except KeyError:
            raise AttributeError(key)


class DeclarationCollector:
    """The `tools` object: captures declarations in registration order."""

    def __init__(self):
        self.declarations = []

    def add_declaration(self, declaration):
        if not isinstance(declaration, dict):
            raise TypeError("declaration must be a dict")
        if not declaration.get("name"):
            raise ValueError("declaration needs a name")
        self.declarations.append(dict(declaration))

    addDeclaration = add_declaration


class FetchResponse:
    """Minimal response object returned by fetch()."""

    def __init__(self, response):
        self.status = response.status_code
        self.ok = response.is_success
        self.url = str(response.url)
        self.headers = dict(response.headers)
        self.text = response.text

    def json(self):
        return jsonlib.loads(self.text)


async def fetch(url, method="GET", headers=None, params=None, json=None, data=None, timeout=20.0):
    """HTTP request primitive for plugin code."""
    import httpx

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        response = await client.request(
            method, url, headers=headers, params=params, json=json, content=data
        )
    return FetchResponse(response)


async def _settle(awaitable):
    return await awaitable


def execute(request: dict) -> dict:
    mode = request.get("mode", "invoke")
    allowed = ALLOWED_MODULES | set(request.get("allowed_modules") or [])
    tools = DeclarationCollector()

    if mode == "declarations":
        context = Context(function=None, args={})
    else:
        context = Context(function=request.get("function"), args=request.get("args") or {})

    namespace = {
        "__builtins__": make_builtins(allowed),
        "__name__": "plugin",
        "console": Console(),
        "fetch": fetch,
        "sleep": asyncio.sleep,
        "gather": asyncio.gather,
        "context": context,
        "tools": tools,
    }

    code = compile(request.get("code", ""), "<plugin>", "exec")
    exec(code, namespace)

    if mode == "declarations":
        declarations = list(tools.declarations)
        for declaration in namespace.get("DECLARATIONS") or []:
            declarations.append(dict(declaration))
        return {"ok": True, "declarations": declarations}

    handler = namespace.get("handle")
    if not callable(handler):
        return {"ok": True, "defined": False, "output": None}

    output = handler(context)
    if inspect.isawaitable(output):
        output = asyncio.run(_settle(output))

    return {"ok": True, "defined": output is not None, "output": output}


# --- Lockdown ---

# Audit events refused outright once plugin code can run
DENIED_EVENTS = frozenset(
    {
        "gc.get_objects",
        "gc.get_referents",
        "gc.get_referrers",
        "os.chflags",
        "os.chmod",
        "os.chown",
        "os.exec",
        "os.fork",
        "os.forkpty",
        "os.kill",
        "os.killpg",
        "os.lchflags",
        "os.link",
        "os.mkdir",
        "os.posix_spawn",
        "os.putenv",
        "os.remove",
        "os.removexattr",
        "os.rename",
        "os.rmdir",
        "os.setxattr",
        "os.spawn",
        "os.symlink",
        "os.system",
        "os.truncate",
        "os.unsetenv",
        "os.utime",
        "resource.prlimit",
        "resource.setrlimit",
    }
)
DENIED_EVENT_PREFIXES = ("ctypes.", "pty.", "shutil.", "sqlite3.", "subprocess.")

# Modules that reach native code or the file system without audited opens
DENIED_IMPORTS = frozenset(
    {
        "_ctypes",
        "_dbm",
        "_gdbm",
        "_multiprocessing",
        "_posixsubprocess",
        "_sqlite3",
        "ctypes",
        "dbm",
        "multiprocessing",
        "sqlite3",
    }
)

WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_TRUNC

DEFAULT_LIMITS = {
    "cpu_seconds": None,
    "memory_mb": 1024,
    "max_open_files": 256,
    "max_file_mb": 16,
}


def apply_limits(limits: dict) -> None:
    """Set hard resource limits for this process. They cannot be raised again."""
    limits = {**DEFAULT_LIMITS, **(limits or {})}

    def cap(kind, value):
        if value:
            resource.setrlimit(kind, (int(value), int(value)))

    cap(resource.RLIMIT_CPU, limits["cpu_seconds"])
    if limits["memory_mb"]:
        cap(resource.RLIMIT_AS, int(limits["memory_mb"]) * 1024 * 1024)
    cap(resource.RLIMIT_NOFILE, limits["max_open_files"])
    if limits["max_file_mb"]:
        cap(resource.RLIMIT_FSIZE, int(limits["max_file_mb"]) * 1024 * 1024)
    resource.setrlimit(resource.RLIMIT_CORE, (0, 0))


def readable_roots(workdir: str) -> tuple:
    """Directories plugin code may read: the interpreter's libraries and the workdir."""
    roots = {sys.prefix, sys.base_prefix, sys.exec_prefix, sys.base_exec_prefix, workdir}
    roots.update(entry for entry in sys.path if entry)
    roots.update(zoneinfo.TZPATH)
    resolved = {os.path.realpath(root) for root in roots if os.path.isabs(root)}
    resolved.discard(os.sep)
    return tuple(sorted(resolved))


def make_audit_hook(workdir: str, readable: tuple):
    """Build the audit hook that confines plugin code.

    Reads are allowed below `readable`, writes only below `workdir`. Paths
    must be absolute, since a relative path may be resolved against a
    directory descriptor the hook cannot see.
    """
    writable = (os.path.realpath(workdir),)

    def within(path, roots):
        return any(path == root or path.startswith(root + os.sep) for root in roots)

    def check_path(event, path, write):
        if path is None:
            path = os.getcwd()
        elif isinstance(path, int):
            return
        elif isinstance(path, str):
            path = str.__str__(path)
        elif isinstance(path, bytes):
            path = bytes.decode(
                path, sys.getfilesystemencoding(), sys.getfilesystemencodeerrors()
            )
        elif type(path) in (pathlib.PurePosixPath, pathlib.PosixPath):
            path = str(path)
        else:
            # Custom path objects could answer differently when the file is opened
            raise PermissionError(f"{event}: unsupported path type in plugins")

        if not os.path.isabs(path):
            raise PermissionError(f"{event}: relative paths are not allowed in plugins")
        resolved = os.path.realpath(path)
        if not within(resolved, writable if write else readable):
            raise PermissionError(f"{event}: access to '{path}' is not allowed in plugins")

    def audit(event, args):
        if event == "open":
            path, mode, flags = args
            mode = str.__str__(mode) if isinstance(mode, str) else ""
            write = any(c in mode for c in "wax+") or (
                isinstance(flags, int) and bool(flags & WRITE_FLAGS)
            )
            check_path(event, path, write)
        elif event in ("os.listdir", "os.scandir"):
            check_path(event, args[0], False)
        elif event == "import":
            name = str.__str__(args[0])
            if name.split(".")[0] in DENIED_IMPORTS:
                raise PermissionError(f"import of '{name}' is not allowed in plugins")
        elif event in DENIED_EVENTS or event.startswith(DENIED_EVENT_PREFIXES):
            raise PermissionError(f"'{event}' is not allowed in plugins")

    return audit


def _refuse_spawn(*args, **kwargs):
    raise PermissionError("process creation is not allowed in plugins")


def lock_down(workdir: str) -> None:
    """Confine this process before any plugin code runs. Irreversible."""
    # Process creation that bypasses the audited os and subprocess entry points
    posixsubprocess = sys.modules.pop("_posixsubprocess", None)
    if posixsubprocess is not None:
        posixsubprocess.fork_exec = _refuse_spawn

    sys.addaudithook(make_audit_hook(workdir, readable_roots(workdir)))


def main() -> int:
    reply_stream = sys.stdout
    sys.stdout = sys.stderr

    try:
        request = jsonlib.loads(sys.stdin.read() or "{}")
        apply_limits(request.get("limits"))
        lock_down(os.getcwd())
        reply = execute(request)
    except (Exception, SystemExit) as e:
        traceback.print_exc(file=sys.stderr)
        reply = {"ok": False, "error": f"{type(e).__name__}: {e}"}

    reply_stream.write(jsonlib.dumps(reply, default=str) + "\n")
    reply_stream.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
