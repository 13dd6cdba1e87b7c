from __future__ import annotations

import json
import logging
import os
import shlex
from dataclasses import dataclass
from typing import Any

from ..errors import ErrorKind, ToolDiscoveryError
from ..util.cancel import CancelToken
from ..util.subprocess import OutputLimitExceeded, describe_outcome, run_cmd
from .base import BaseTool, ToolContext, ToolDeclaration, ToolError, ToolResult

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 10 * 1024 * 1024
DISCOVERY_TIMEOUT_SECONDS = 120

_DESCRIPTION_SUFFIX = """

This tool was discovered from the project by executing the command `{discovery}` on project root.
When called, this tool will execute the command `{call} {name}` on project root.
Tool discovery and call commands can be configured in project or user settings.

When called, the tool call command is executed as a subprocess.
On success, tool output is returned as a json string.
Otherwise, the following information is returned:

Stdout: Output on stdout stream. Can be `(empty)` or partial.
Stderr: Output on stderr stream. Can be `(empty)` or partial.
Error: Error or `(none)` if no error was reported for the subprocess.
Exit Code: Exit code or `(none)` if terminated by signal.
Signal: Signal number or `(none)` if no signal was received.
"""


@dataclass
class ShellDiscoveredTool(BaseTool):
    """A tool reported by the project's discovery command and run via the call command."""

    spec: ToolDeclaration
    call_command: str | None = None

    @property
    def discovered(self) -> bool:
        return True

    def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        if not self.call_command:
            return ToolResult.failure(f"No tool call command configured for discovered tool {self.name}.")
        cmd = [*shlex.split(self.call_command), self.name]

        stdout = stderr = ""
        error: str | None = None
        code: int | None = None
        signal: int | None = None
        try:
            res = run_cmd(cmd, cwd=ctx.cwd, timeout=None, input=json.dumps(args), cancel=ctx.cancel)
            stdout, stderr = res.stdout, res.stderr
            code, signal = (None, res.signal) if res.signal else (res.returncode, None)
        except OSError as e:
            error = str(e)

        if error or code != 0 or signal or stderr:
            text = describe_outcome(stdout, stderr, error=error, returncode=code, signal=signal)
            return ToolResult(content=text, display=text, error=ToolError(text, ErrorKind.EXECUTION_FAILED))
        return ToolResult(content=stdout, display=stdout)


def parse_discovery_output(stdout: str) -> list[dict[str, Any]]:
    """Flatten the discovery command's JSON array into declaration objects."""
    try:
        items = json.loads(stdout.strip())
    except json.JSONDecodeError as e:
        raise ToolDiscoveryError(f"Tool discovery command produced invalid JSON: {e}") from e
    if not isinstance(items, list):
        raise ToolDiscoveryError("Tool discovery command did not return a JSON array of tools.")

    functions: list[dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        if isinstance(item.get("function_declarations"), list):
            functions.extend(f for f in item["function_declarations"] if isinstance(f, dict))
        elif isinstance(item.get("functionDeclarations"), list):
            functions.extend(f for f in item["functionDeclarations"] if isinstance(f, dict))
        elif item.get("name"):
            functions.append(item)
    return functions


def discover_tools_from_command(
    discovery_command: str,
    call_command: str | None,
    *,
    cancel: CancelToken | None = None,
    cwd: str | None = None,
) -> list[ShellDiscoveredTool]:
    parts = shlex.split(discovery_command)
    if not parts:
        raise ToolDiscoveryError("Tool discovery command is empty or contains only whitespace.")

    try:
        res = run_cmd(
            parts,
            cwd=cwd or os.getcwd(),
            timeout=DISCOVERY_TIMEOUT_SECONDS,
            cancel=cancel,
            max_output_bytes=MAX_OUTPUT_BYTES,
        )
    except OutputLimitExceeded as e:
        raise ToolDiscoveryError(f"Tool discovery command output exceeded size limit of {e.limit} bytes.") from e
    if res.returncode != 0:
        logger.error("Tool discovery command failed with code %s: %s", res.returncode, res.stderr.strip())
        raise ToolDiscoveryError(f"Tool discovery command failed with exit code {res.returncode}")

    tools: list[ShellDiscoveredTool] = []
    for func in parse_discovery_output(res.stdout):
        name = func.get("name")
        if not isinstance(name, str) or not name:
            logger.warning("Discovered a tool with no name. Skipping.")
            continue
        schema = func.get("parametersJsonSchema", func.get("parameters"))
        if not isinstance(schema, dict):
            schema = {}
        description = str(func.get("description") or "") + _DESCRIPTION_SUFFIX.format(
            discovery=discovery_command, call=call_command or "", name=name,
        )
        spec = ToolDeclaration(name=name, description=description, parameters=schema, permission_key="discovered")
        tools.append(ShellDiscoveredTool(spec=spec, call_command=call_command))
    logger.debug("discovery command registered %d tool(s)", len(tools))
    return tools
