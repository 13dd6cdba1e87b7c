from __future__ import annotations
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..base import BaseTool, ToolContext, ToolDeclaration, ToolResult
from ...util.fs import FsError, resolve_path
from ...util.subprocess import describe_outcome, run_cmd

MAX_OUTPUT_CHARS = 30_000


def _shell_argv(command: str) -> list[str]:
    if os.name == "nt":
        return ["cmd.exe", "/c", command]
    return ["bash" if shutil.which("bash") else "sh", "-c", command]


def _cap(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[:MAX_OUTPUT_CHARS] + f"\n... ({len(text) - MAX_OUTPUT_CHARS} more characters truncated)"


@dataclass
class ShellTool(BaseTool):
    spec: ToolDeclaration = field(default_factory=lambda: ToolDeclaration(
        name="run_shell_command",
        description=(
            "Run a shell command (bash -c, or cmd.exe /c on Windows) and report its stdout, stderr, "
            "exit code and signal. The command is killed when it times out or the session is cancelled."
        ),
        permission_key="execute",
        parameters={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Exact command to execute."},
                "directory": {"type": "string", "description": "Directory to run in, relative to the project root."},
                "timeout": {"type": "integer", "minimum": 1, "default": 120, "description": "Timeout in seconds."},
            },
            "required": ["command"],
        },
    ))

    def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        command = args["command"].strip()
        if not command:
            return ToolResult.failure("Command cannot be empty.")
        timeout = int(args.get("timeout", 120))

        directory = args.get("directory") or "."
        try:
            run_dir = resolve_path(Path(ctx.cwd), directory)
        except FsError as e:
            return ToolResult.failure(str(e))
        if not run_dir.is_dir():
            return ToolResult.failure(f"Directory not found: {directory}")

        header = f"Command: {command}\nDirectory: {'(root)' if directory == '.' else directory}\n"
        try:
            res = run_cmd(_shell_argv(command), cwd=str(run_dir), timeout=timeout, cancel=ctx.cancel)
        except subprocess.TimeoutExpired:
            return ToolResult.failure(f"Command timed out after {timeout}s: {command}")
        except OSError as e:
            return ToolResult.failure(header + describe_outcome("", "", error=str(e)))

        code = None if res.signal else res.returncode
        report = header + describe_outcome(_cap(res.stdout.rstrip("\n")), _cap(res.stderr.rstrip("\n")), returncode=code, signal=res.signal)
        if res.returncode != 0:
            return ToolResult.failure(report)
        return ToolResult(content=report, display=f"$ {command} (exit 0)")
