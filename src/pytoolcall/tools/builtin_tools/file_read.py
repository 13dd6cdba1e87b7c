from __future__ import annotations
import base64
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..base import BaseTool, ToolContext, ToolDeclaration, ToolResult, inline_data_part
from ...util.fs import FsError, read_text, resolve_path

# Returned to the model as inline data rather than decoded text.
_BINARY_MIME_PREFIXES = ("image/", "audio/", "application/pdf")

@dataclass
class ReadFileTool(BaseTool):
    spec: ToolDeclaration = field(default_factory=lambda: ToolDeclaration(
        name="read_file",
        description="Read a file relative to the working directory. Text files may be limited to a line range; images and PDFs are returned as binary content.",
        permission_key="read",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to cwd."},
                "start_line": {"type": "integer", "minimum": 1, "description": "1-based start line (inclusive)."},
                "end_line": {"type": "integer", "minimum": 1, "description": "1-based end line (inclusive)."},
                "max_chars": {"type": "integer", "minimum": 1, "default": 40000},
            },
            "required": ["path"],
        },
    ))

    def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        cwd = Path(ctx.cwd)
        path = args["path"]
        try:
            p = resolve_path(cwd, path)
        except FsError as e:
            return ToolResult.failure(str(e))
        if not p.is_file():
            return ToolResult.failure(f"File not found: {path}")

        mime, _ = mimetypes.guess_type(p.name)
        if mime and mime.startswith(_BINARY_MIME_PREFIXES):
            data = base64.b64encode(p.read_bytes()).decode("ascii")
            return ToolResult(content=[inline_data_part(mime, data)], display=f"Read {mime} file: {path}")

        lines = read_text(p).splitlines()
        s = args.get("start_line")
        e = args.get("end_line")
        if s is not None or e is not None:
            s = max(1, int(s or 1))
            e = min(len(lines), int(e or len(lines)))
            lines = lines[s - 1:e]

        out = "\n".join(lines)
        max_chars = int(args.get("max_chars", 40000))
        if len(out) > max_chars:
            out = out[:max_chars] + "\n... (truncated)"
        return ToolResult(content=out, display=f"Read {len(lines)} line(s) from {path}")
