from __future__ import annotations

"""Sandboxed runner for inline-script steps.

A script is the body of an ``async def``: it may ``await``, and its explicit
``return`` value is the step result. It runs against a restricted set of
builtins with these bindings:

- ``input``: the rendered step input
- ``context``: ``{"inputs": ..., "steps": ...}`` (workflow inputs and prior outputs)
- ``logger``: captures ``debug``/``info``/``warning``/``error`` calls
- ``print``: captures plain lines
- ``json``, ``math``, ``datetime``, ``sleep``: safe helpers

Every script runs in a fresh ``spawn`` process with its own event loop.
Log lines stream back over a pipe while the script runs. Once the wall-clock
cap passes the process is terminated, and killed if it does not exit.
"""

import ast
import asyncio
import datetime as _datetime
import importlib
import json as _json
import logging
import math as _math
import multiprocessing
import time
from dataclasses import dataclass
from multiprocessing.connection import Connection
from multiprocessing.process import BaseProcess
from types import CodeType, SimpleNamespace
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from engine.node import NodeExecutionError, NodeTimeoutError

logger = logging.getLogger("workflow.sandbox")

SCRIPT_FILENAME = "<workflow-code-step>"
_ENTRY = "__workflow_step__"

# Seconds a new script process may take to import and report ready. Not
# counted against the script's own cap.
STARTUP_ALLOWANCE = 10.0
_KILL_GRACE = 1.0

_CONTEXT = multiprocessing.get_context("spawn")

# Attribute names that give access to interpreter internals or bypass the AST
# check through format strings.
_BLOCKED_ATTRIBUTES = frozenset(
    {
        "format",
        "format_map",
        "mro",
        "gi_frame",
        "gi_code",
        "cr_frame",
        "ag_frame",
        "tb_frame",
        "f_back",
        "f_globals",
        "f_builtins",
        "f_locals",
    }
)

_SAFE_BUILTINS: Dict[str, Any] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bin": bin,
    "bool": bool,
    "callable": callable,
    "chr": chr,
    "dict": dict,
    "divmod": divmod,
    "enumerate": enumerate,
    "filter": filter,
    "float": float,
    "frozenset": frozenset,
    "hex": hex,
    "int": int,
    "isinstance": isinstance,
    "iter": iter,
    "len": len,
    "list": list,
    "map": map,
    "max": max,
    "min": min,
    "next": next,
    "oct": oct,
    "ord": ord,
    "pow": pow,
    "range": range,
    "repr": repr,
    "reversed": reversed,
    "round": round,
    "set": set,
    "slice": slice,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "tuple": tuple,
    "zip": zip,
    "ArithmeticError": ArithmeticError,
    "AttributeError": AttributeError,
    "Exception": Exception,
    "ImportError": ImportError,
    "IndexError": IndexError,
    "KeyError": KeyError,
    "LookupError": LookupError,
    "NotImplementedError": NotImplementedError,
    "RuntimeError": RuntimeError,
    "StopIteration": StopIteration,
    "TypeError": TypeError,
    "ValueError": ValueError,
    "ZeroDivisionError": ZeroDivisionError,
}


class ScriptRejected(Exception):
    """Raised when a script fails to parse or uses blocked constructs."""


@dataclass(slots=True)
class ScriptResult:
    result: Any
    logs: list[str]
    elapsed_ms: float


def _render(args: tuple[Any, ...]) -> str:
    parts = []
    for arg in args:
        if isinstance(arg, (dict, list, tuple)):
            parts.append(_json.dumps(arg, default=str))
        else:
            parts.append(str(arg))
    return " ".join(parts)


class ScriptLogger:
    """Logging shim that records calls in order instead of writing output.

    ``sink`` receives each line as it is recorded.
    """

    def __init__(self, sink: Optional[Callable[[str], None]] = None) -> None:
        self.lines: list[str] = []
        self._sink = sink

    def _add(self, line: str) -> None:
        self.lines.append(line)
        if self._sink is not None:
            self._sink(line)

    def print(self, *args: Any) -> None:
        self._add(_render(args))

    def debug(self, *args: Any) -> None:
        self._add(f"[DEBUG] {_render(args)}")

    def info(self, *args: Any) -> None:
        self._add(f"[INFO] {_render(args)}")

    def warning(self, *args: Any) -> None:
        self._add(f"[WARNING] {_render(args)}")

    def error(self, *args: Any) -> None:
        self._add(f"[ERROR] {_render(args)}")


def find_violations(tree: ast.AST) -> list[str]:
    """Return descriptions of blocked constructs in a parsed script."""

    violations: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_") or node.attr in _BLOCKED_ATTRIBUTES:
                violations.append(f"line {node.lineno}: access to attribute '{node.attr}' is not allowed")
        elif isinstance(node, ast.Name) and node.id.startswith("__"):
            violations.append(f"line {node.lineno}: access to name '{node.id}' is not allowed")
        elif isinstance(node, (ast.Global, ast.Nonlocal)):
            violations.append(f"line {node.lineno}: global and nonlocal statements are not allowed")
    return violations


def compile_script(script: str) -> CodeType:
    """Parse, check and wrap a script body into an async entry function."""

    try:
        tree = ast.parse(script, filename=SCRIPT_FILENAME)
    except SyntaxError as exc:
        raise ScriptRejected(f"SyntaxError: {exc.msg} at line {exc.lineno}") from exc

    violations = find_violations(tree)
    if violations:
        raise ScriptRejected("Security violation: " + "; ".join(violations))

    wrapper = ast.parse(f"async def {_ENTRY}():\n    pass\n", filename=SCRIPT_FILENAME)
    entry = wrapper.body[0]
    assert isinstance(entry, ast.AsyncFunctionDef)
    entry.body = tree.body or [ast.Pass()]
    ast.fix_missing_locations(wrapper)
    try:
        return compile(wrapper, SCRIPT_FILENAME, "exec")
    except SyntaxError as exc:
        raise ScriptRejected(f"SyntaxError: {exc.msg} at line {exc.lineno}") from exc


def _importer(allowed: frozenset[str]) -> Callable[..., Any]:
    def _import(name: str, globals: Any = None, locals: Any = None, fromlist: Any = (), level: int = 0) -> Any:
        root = name.split(".", 1)[0]
        if level == 0 and root in allowed:
            module = importlib.import_module(name)
            return module if fromlist else importlib.import_module(root)
        available = ", ".join(sorted(allowed)) or "none"
        raise ImportError(f"Module '{name}' is not available. Allowed modules: {available}")

    return _import


def _namespace(
    script_logger: ScriptLogger,
    importer: Callable[..., Any],
    step_input: Any,
    inputs: Mapping[str, Any],
    step_results: Mapping[str, Any],
) -> Dict[str, Any]:
    builtins = dict(_SAFE_BUILTINS)
    builtins["print"] = script_logger.print
    builtins["__import__"] = importer
    return {
        "__builtins__": builtins,
        "input": step_input if step_input is not None else {},
        "context": {"inputs": dict(inputs), "steps": dict(step_results)},
        "logger": script_logger,
        "json": SimpleNamespace(dumps=_json.dumps, loads=_json.loads),
        "math": _math,
        "datetime": SimpleNamespace(
            datetime=_datetime.datetime,
            date=_datetime.date,
            timedelta=_datetime.timedelta,
            timezone=_datetime.timezone,
        ),
        "sleep": asyncio.sleep,
    }


def _script_main(
    script: str,
    step_input: Any,
    inputs: Mapping[str, Any],
    step_results: Mapping[str, Any],
    allowed_modules: list[str],
    conn: Connection,
) -> None:
    """Entry point of a script process.

    Sends ``("ready", None)``, any number of ``("log", line)`` messages, then
    exactly one ``("result", value)`` or ``("error", message)``.
    """

    with conn:
        script_logger = ScriptLogger(sink=lambda line: conn.send(("log", line)))
        namespace = _namespace(
            script_logger,
            _importer(frozenset(allowed_modules)),
            step_input,
            inputs,
            step_results,
        )
        exec(compile_script(script), namespace)
        conn.send(("ready", None))
        try:
            result = asyncio.run(namespace[_ENTRY]())
        except Exception as exc:
            conn.send(("error", str(exc) or type(exc).__name__))
            return
        try:
            conn.send(("result", result))
        except Exception as exc:
            conn.send(("error", f"Script result could not be serialized: {exc}"))


def _collect(conn: Connection, timeout: float, lines: list[str]) -> Tuple[str, Any, float]:
    """Read script messages until a final one arrives, the pipe closes or time runs out.

    Returns ``(kind, value, elapsed_ms)`` where ``kind`` is ``result``,
    ``error``, ``exit`` or ``timeout``.
    """

    with conn:
        deadline = time.monotonic() + STARTUP_ALLOWANCE
        started: Optional[float] = None
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not conn.poll(remaining):
                return "timeout", None, 0.0
            try:
                kind, value = conn.recv()
            except EOFError:
                return "exit", None, 0.0
            if kind == "ready":
                started = time.perf_counter()
                deadline = time.monotonic() + timeout
            elif kind == "log":
                lines.append(value)
            else:
                elapsed = (time.perf_counter() - started) * 1000.0 if started is not None else 0.0
                return kind, value, elapsed


def _stop(process: BaseProcess) -> None:
    if process.is_alive():
        process.terminate()
        process.join(_KILL_GRACE)
        if process.is_alive():
            logger.warning("Script process %s ignored terminate; killing it", process.pid)
            process.kill()
    process.join(_KILL_GRACE)


class ScriptRunner:
    """Executes inline scripts under a wall-clock cap with captured diagnostics."""

    def __init__(self, *, allowed_modules: Iterable[str] = ()) -> None:
        self._allowed_modules = sorted(set(allowed_modules))

    @staticmethod
    def _failed(node_name: str, message: str, lines: list[str]) -> NodeExecutionError:
        lines.append(f"[EXECUTION ERROR] {message}")
        return NodeExecutionError(
            node_name,
            f"Code execution failed: {message}",
            details={"logs": list(lines)},
        )

    async def run(
        self,
        script: str,
        *,
        timeout: float,
        step_input: Any = None,
        inputs: Optional[Mapping[str, Any]] = None,
        step_results: Optional[Mapping[str, Any]] = None,
        node_name: str = "code",
    ) -> ScriptResult:
        """Run ``script`` and return its result, captured logs and elapsed time.

        Raises NodeTimeoutError when the cap elapses first and
        NodeExecutionError when the script is rejected or raises.
        """

        lines: list[str] = []
        timeout_ms = round(timeout * 1000)

        try:
            compile_script(script)
        except ScriptRejected as exc:
            raise self._failed(node_name, str(exc), lines) from exc

        recv_conn, send_conn = _CONTEXT.Pipe(duplex=False)
        process = _CONTEXT.Process(
            target=_script_main,
            args=(script, step_input, dict(inputs or {}), dict(step_results or {}), self._allowed_modules, send_conn),
            name="workflow-script",
            daemon=True,
        )
        try:
            process.start()
        except Exception as exc:
            recv_conn.close()
            raise self._failed(node_name, f"could not start script process: {exc}", lines) from exc
        finally:
            send_conn.close()

        try:
            kind, value, elapsed_ms = await asyncio.to_thread(_collect, recv_conn, timeout, lines)
        except asyncio.CancelledError:
            _stop(process)
            raise
        await asyncio.to_thread(_stop, process)

        if kind == "timeout":
            message = f"Code execution timed out after {timeout_ms}ms"
            logger.warning("%s: %s", node_name, message)
            raise NodeTimeoutError(
                node_name,
                message,
                details={"logs": list(lines), "timeout_ms": timeout_ms},
            )
        if kind == "exit":
            raise self._failed(node_name, f"script process exited with code {process.exitcode}", lines)
        if kind == "error":
            raise self._failed(node_name, value, lines)

        return ScriptResult(result=value, logs=lines, elapsed_ms=elapsed_ms)


__all__ = [
    "SCRIPT_FILENAME",
    "STARTUP_ALLOWANCE",
    "ScriptLogger",
    "ScriptRejected",
    "ScriptResult",
    "ScriptRunner",
    "compile_script",
    "find_violations",
]
