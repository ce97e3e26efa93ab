"""Run user supplied Python for ``code`` nodes in an isolated subprocess."""
from __future__ import annotations

import json
import os
import resource
import subprocess
import sys
import tempfile
from collections.abc import Callable
from typing import Any

from ..errors import PermanentNodeError, TransientNodeError

_WRAPPER_TEMPLATE = (
    "import json, sys\n"
    "payload = json.loads(sys.stdin.read() or \"{}\")\n"
    "inputs = payload.get(\"inputs\", {})\n"
    "context = payload.get(\"context\", {})\n"
    "{CODE}\n"
    "out = run(inputs, context)\n"
    "print(json.dumps({\"result\": out}, default=str))\n"
)

MEMORY_LIMIT_BYTES = 256 * 1024 * 1024


def build_preexec_fn() -> Callable[[], None] | None:
    """Return a callable that caps the child's address space and CPU time."""

    if not sys.platform.startswith("linux"):
        return None

    def _limit() -> None:
        resource.setrlimit(resource.RLIMIT_AS, (MEMORY_LIMIT_BYTES, MEMORY_LIMIT_BYTES))

    return _limit


def _write_wrapper_file(code: str) -> str:
    with tempfile.NamedTemporaryFile("w", suffix=".py", delete=False) as tmp_file:
        tmp_file.write(_WRAPPER_TEMPLATE.replace("{CODE}", code))
        tmp_file.flush()
        return tmp_file.name


def _last_line(debug: str, default: str) -> str:
    lines = debug.strip().splitlines()
    return lines[-1] if lines and lines[-1] else default


def run_code(
    code: str,
    inputs: dict[str, Any],
    context: dict[str, Any] | None = None,
    *,
    timeout: float = 1.5,
) -> tuple[Any, str]:
    """Execute ``run(inputs, context)`` from ``code`` and return ``(result, stderr)``.

    Syntax errors, exceptions raised by the user code and malformed output
    are permanent; running out of time is transient.
    """

    wrapper_path = _write_wrapper_file(code)
    try:
        payload = json.dumps({"inputs": inputs, "context": context or {}}, default=str)
        completed = subprocess.run(
            [sys.executable, "-I", wrapper_path],
            input=payload,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
            preexec_fn=build_preexec_fn(),
        )
    except subprocess.TimeoutExpired:
        raise TransientNodeError(
            f"Code execution exceeded {timeout} seconds", code="TIMEOUT"
        ) from None
    finally:
        try:
            os.unlink(wrapper_path)
        except OSError:
            pass

    debug_output = completed.stderr or ""
    if completed.returncode != 0:
        error_code = "SYNTAX_ERROR" if "SyntaxError" in debug_output else "CODE_ERROR"
        raise PermanentNodeError(
            _last_line(debug_output, "Code execution failed"),
            code=error_code,
            details={"stderr": debug_output[-2000:]},
        )
    # user code may print; the result is always the last line
    stdout_lines = (completed.stdout or "").strip().splitlines()
    try:
        parsed = json.loads(stdout_lines[-1] if stdout_lines else "{}")
    except json.JSONDecodeError:
        raise PermanentNodeError("Invalid JSON output from code node", code="PROTOCOL_ERROR") from None
    if not isinstance(parsed, dict):
        raise PermanentNodeError("Invalid JSON output from code node", code="PROTOCOL_ERROR")
    return parsed.get("result"), debug_output
