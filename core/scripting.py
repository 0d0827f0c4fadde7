"""
Sandboxed execution of tenant-authored snippets (api_call post-scripts and
script blocks).

Snippets are small Python programs. They see only the bindings passed in
(``vars``, and ``response`` for api_call scripts) and publish their result
by assigning ``output``. Each run:

  - is statically checked first: no imports, no dunder names, no private
    attribute access and no frame or traceback introspection
  - executes in a fresh isolated interpreter process (``python -I``) with a
    whitelisted set of builtins, so there is no ambient file, network or
    process access
  - is bounded by a wall-clock timeout (the process is killed) and an
    address-space limit
  - exchanges data with the host as JSON over stdin/stdout only
"""
from __future__ import annotations

import ast
import asyncio
import json
import sys
from typing import Any, Optional

import structlog

from core.errors import ScriptExecutionError

try:
    import resource
except ImportError:  # not available on Windows
    resource = None

logger = structlog.get_logger()

ALLOWED_BUILTINS = (
    "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter", "float",
    "format", "int", "isinstance", "len", "list", "map", "max", "min", "range",
    "repr", "reversed", "round", "set", "sorted", "str", "sum", "tuple", "zip",
    "Exception", "KeyError", "ValueError", "TypeError", "IndexError",
)

FORBIDDEN_NAMES = frozenset({
    "eval", "exec", "compile", "open", "globals", "locals", "getattr", "setattr",
    "delattr", "breakpoint", "input", "help", "memoryview", "type", "object",
    "super", "classmethod", "staticmethod", "property", "exit", "quit",
})

# Frame, code and traceback introspection leads back to the host interpreter
FORBIDDEN_ATTRIBUTES = frozenset({
    "gi_frame", "gi_code", "gi_yieldfrom", "cr_frame", "cr_code", "cr_await",
    "ag_frame", "ag_code", "ag_await", "f_back", "f_globals", "f_locals", "f_builtins",
    "f_code", "f_trace", "tb_frame", "tb_next", "with_traceback", "mro",
})
FORBIDDEN_ATTRIBUTE_PREFIXES = ("_", "gi_", "cr_", "ag_", "f_", "tb_", "co_")

# Runs inside the child interpreter. Only the JSON on stdin crosses the boundary.
_BOOTSTRAP = r"""
import builtins, json, sys
_request = json.load(sys.stdin)
_env = {"__builtins__": {n: getattr(builtins, n) for n in _request["builtins"] if hasattr(builtins, n)},
        "output": ""}
_env.update(_request["bindings"])
_code = compile(_request["code"], "<script>", "exec")
_expression = compile(_request["expression"], "<function>", "eval") if _request.get("expression") else None
_write, _dumps = sys.stdout.write, json.dumps
del builtins, json, sys, _request
exec(_code, _env)
if _expression is not None:
    try:
        _env["output"] = eval(_expression, _env)
    except Exception:
        _env["output"] = ""
_write(_dumps({"output": _env.get("output")}, default=str))
"""


def validate_source(source: str, mode: str = "exec") -> None:
    """Reject snippets that try to reach outside their bindings."""
    try:
        tree = ast.parse(source, mode=mode)
    except SyntaxError as e:
        raise ScriptExecutionError(f"Syntax error in script: {e.msg} (line {e.lineno})") from e

    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            raise ScriptExecutionError("Imports are not allowed in scripts")
        if isinstance(node, (ast.Global, ast.Nonlocal)):
            raise ScriptExecutionError("global/nonlocal are not allowed in scripts")
        if isinstance(node, ast.Name) and (node.id.startswith("__") or node.id in FORBIDDEN_NAMES):
            raise ScriptExecutionError(f"Name '{node.id}' is not allowed in scripts")
        if isinstance(node, ast.Attribute) and (
            node.attr in FORBIDDEN_ATTRIBUTES or node.attr.startswith(FORBIDDEN_ATTRIBUTE_PREFIXES)
        ):
            raise ScriptExecutionError(f"Attribute '{node.attr}' is not allowed in scripts")


class ScriptSandbox:

    def __init__(self, timeout_seconds: float = 2.0, memory_mb: int = 128,
                 python_executable: Optional[str] = None):
        self.timeout_seconds = timeout_seconds
        self.memory_mb = memory_mb
        self._python = python_executable or sys.executable

    def _limit_resources(self):
        if resource is None:
            return
        limit = self.memory_mb * 1024 * 1024
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))

    async def run(self, code: str, bindings: dict[str, Any],
                  expression: Optional[str] = None) -> Any:
        """
        Execute ``code`` (then evaluate ``expression`` into ``output`` when
        given) and return the ``output`` binding.

        Raises ScriptExecutionError on rejection, failure or timeout.
        """
        validate_source(code or "")
        if expression:
            validate_source(expression, mode="eval")

        try:
            request = json.dumps({
                "code": code or "",
                "expression": expression,
                "bindings": bindings,
                "builtins": ALLOWED_BUILTINS,
            }, default=str).encode()
        except (TypeError, ValueError) as e:
            raise ScriptExecutionError(f"Script bindings are not serializable: {e}") from e

        proc = await asyncio.create_subprocess_exec(
            self._python, "-I", "-c", _BOOTSTRAP,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            preexec_fn=self._limit_resources if resource is not None else None,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(request), self.timeout_seconds)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("script_killed", timeout=self.timeout_seconds)
            raise ScriptExecutionError(f"Script timed out after {self.timeout_seconds}s") from None

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip().splitlines()
            raise ScriptExecutionError(detail[-1] if detail else f"Script exited with {proc.returncode}")

        try:
            return json.loads(stdout.decode() or "{}").get("output")
        except ValueError as e:
            raise ScriptExecutionError(f"Script produced invalid output: {e}") from e
