from __future__ import annotations
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..base import BaseTool, ToolContext, ToolDeclaration, ToolResult
from ...util.fs import FsError, resolve_path

@dataclass
class ListDirectoryTool(BaseTool):
    spec: ToolDeclaration = field(default_factory=lambda: ToolDeclaration(
        name="list_directory",
        description="List files and directories under a path relative to the working directory.",
        permission_key="read",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path relative to cwd. Default '.'"},
                "max_entries": {"type": "integer", "minimum": 1, "default": 200},
                "recursive": {"type": "boolean", "default": False},
            },
        },
    ))

    def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        cwd = Path(ctx.cwd).expanduser().resolve()
        path = args.get("path", ".")
        max_entries = int(args.get("max_entries", 200))
        try:
            p = resolve_path(cwd, path)
        except FsError as e:
            return ToolResult.failure(str(e))
        if not p.exists():
            return ToolResult.failure(f"Path not found: {path}")
        if not p.is_dir():
            return ToolResult.failure(f"Not a directory: {path}")

        entries: list[str] = []
        if args.get("recursive"):
            for root, dirs, files in os.walk(p):
                dirs.sort()
                rootp = Path(root)
                for name in [*dirs, *sorted(files)]:
                    suffix = "/" if name in dirs else ""
                    entries.append(str((rootp / name).relative_to(cwd)) + suffix)
                ctx.cancel.raise_if_cancelled()
                if len(entries) >= max_entries:
                    break
        else:
            for child in sorted(p.iterdir(), key=lambda x: (not x.is_dir(), x.name.lower())):
                entries.append(str(child.relative_to(cwd)) + ("/" if child.is_dir() else ""))

        truncated = len(entries) > max_entries
        entries = entries[:max_entries]
        out = "\n".join(entries) if entries else "(empty)"
        if truncated:
            out += f"\n... (truncated at {max_entries} entries)"
        return ToolResult(content=out, display=f"Listed {len(entries)} entr{'y' if len(entries) == 1 else 'ies'} in {path}")
