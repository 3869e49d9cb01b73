"""Local program execution with AST-based safety validation."""

from __future__ import annotations

import ast
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Optional

# Status ids follow the Judge0 convention so local and remote results normalize alike.
STATUS_IN_QUEUE = 1
STATUS_PROCESSING = 2
STATUS_ACCEPTED = 3
STATUS_TIME_LIMIT = 5
STATUS_COMPILATION_ERROR = 6
STATUS_RUNTIME_ERROR = 11
STATUS_INTERNAL_ERROR = 13

STATUS_DESCRIPTIONS = {
    STATUS_IN_QUEUE: "In Queue",
    STATUS_PROCESSING: "Processing",
    STATUS_ACCEPTED: "Accepted",
    STATUS_TIME_LIMIT: "Time Limit Exceeded",
    STATUS_COMPILATION_ERROR: "Compilation Error",
    STATUS_RUNTIME_ERROR: "Runtime Error (NZEC)",
    STATUS_INTERNAL_ERROR: "Internal Error",
}

SANDBOX_BANNED_BUILTINS = {
    "exec",
    "eval",
    "compile",
    "__import__",
    "open",
    "input",
    "globals",
    "locals",
    "breakpoint",
    "exit",
    "quit",
}

SANDBOX_BANNED_MODULES = {
    "os",
    "subprocess",
    "pathlib",
    "socket",
    "requests",
    "httpx",
    "urllib",
    "shutil",
    "tempfile",
    "multiprocessing",
    "threading",
    "ctypes",
    "signal",
    "importlib",
    "pickle",
}


@dataclass
class ExecutionResult:
    """One program run, normalized across execution backends."""

    status_id: int
    stdout: str = ""
    stderr: str = ""
    compile_output: str = ""
    time: float = 0.0
    memory: float = 0.0
    status: str = ""

    def __post_init__(self) -> None:
        if not self.status:
            self.status = STATUS_DESCRIPTIONS.get(self.status_id, "Unknown")

    @property
    def accepted(self) -> bool:
        return self.status_id == STATUS_ACCEPTED

    @property
    def pending(self) -> bool:
        return self.status_id in (STATUS_IN_QUEUE, STATUS_PROCESSING)

    @property
    def error_text(self) -> Optional[str]:
        text = (self.stderr or self.compile_output or "").strip()
        return text or None


def validate_sandbox_code(code: str) -> Optional[str]:
    """Return an error message if ``code`` is unsafe to run, else None."""

    try:
        tree = ast.parse(code)
    except SyntaxError as exc:
        return f"Syntax error at line {exc.lineno}: {exc.msg}"

    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                root = alias.name.split(".")[0]
                if root in SANDBOX_BANNED_MODULES:
                    return f"Banned module: {alias.name}"

        if isinstance(node, ast.ImportFrom):
            root = (node.module or "").split(".")[0]
            if root in SANDBOX_BANNED_MODULES:
                return f"Banned module import-from: {node.module}"

        if isinstance(node, ast.Call):
            if isinstance(node.func, ast.Name) and node.func.id in SANDBOX_BANNED_BUILTINS:
                return f"Forbidden builtin: {node.func.id}()"
            if isinstance(node.func, ast.Attribute) and isinstance(node.func.value, ast.Name):
                if node.func.value.id in SANDBOX_BANNED_MODULES:
                    return f"Forbidden module call: {node.func.value.id}.{node.func.attr}()"

    return None


def _run_process(command: list[str], stdin: str, timeout: float, cwd: str) -> ExecutionResult:
    started = perf_counter()
    try:
        completed = subprocess.run(
            command,
            input=stdin,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired as exc:
        partial = exc.stdout.decode("utf-8", "replace") if isinstance(exc.stdout, bytes) else (exc.stdout or "")
        return ExecutionResult(
            status_id=STATUS_TIME_LIMIT,
            stdout=partial,
            stderr=f"Execution timed out after {timeout:g}s",
            time=float(timeout),
        )
    elapsed = perf_counter() - started

    if completed.returncode != 0:
        return ExecutionResult(
            status_id=STATUS_RUNTIME_ERROR,
            stdout=completed.stdout,
            stderr=completed.stderr,
            time=elapsed,
        )
    return ExecutionResult(
        status_id=STATUS_ACCEPTED,
        stdout=completed.stdout,
        stderr=completed.stderr,
        time=elapsed,
    )


def execute_program(source: str, language: str, stdin: str = "", timeout: float = 10.0) -> ExecutionResult:
    """Run one complete program locally and return its normalized result.

    Python runs under the current interpreter in isolated mode after the AST
    safety check; JavaScript runs under ``node`` when it is on PATH.
    """

    with tempfile.TemporaryDirectory(prefix="loop_exec_") as work_dir:
        if language == "python":
            safety_error = validate_sandbox_code(source)
            if safety_error:
                return ExecutionResult(
                    status_id=STATUS_COMPILATION_ERROR,
                    compile_output=f"Safety check failed: {safety_error}",
                )
            script = Path(work_dir) / "main.py"
            script.write_text(source, encoding="utf-8")
            return _run_process([sys.executable, "-I", str(script)], stdin, timeout, work_dir)

        if language == "javascript":
            node = shutil.which("node")
            if node is None:
                return ExecutionResult(status_id=STATUS_INTERNAL_ERROR, stderr="node executable not found")
            script = Path(work_dir) / "main.js"
            script.write_text(source, encoding="utf-8")
            return _run_process([node, str(script)], stdin, timeout, work_dir)

    return ExecutionResult(
        status_id=STATUS_INTERNAL_ERROR,
        stderr=f"Local execution does not support language '{language}'",
    )
