from __future__ import annotations

import json
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from ..errors import ErrorKind
from ..tools.base import (
    BaseTool,
    Part,
    ToolContext,
    ToolDeclaration,
    ToolError,
    ToolResult,
    inline_data_part,
    is_binary_part,
    part_mime_type,
    text_part,
)
from .models import sanitize_tool_name

if TYPE_CHECKING:
    from .manager import McpClientManager


def _content_block_to_parts(block: Any) -> list[Part]:
    if not isinstance(block, dict):
        return [text_part(str(block))]
    kind = block.get("type")
    if kind == "text":
        return [text_part(str(block.get("text", "")))]
    if kind in ("image", "audio"):
        return [inline_data_part(str(block.get("mimeType") or "application/octet-stream"), str(block.get("data", "")))]
    if kind == "resource":
        res = block.get("resource") or {}
        if "text" in res:
            return [text_part(str(res.get("text", "")))]
        if "blob" in res:
            mime = str(res.get("mimeType") or "application/octet-stream")
            return [
                text_part(f"[Tool '{res.get('uri', '')}' provided the following embedded resource with mime-type: {mime}]"),
                inline_data_part(mime, str(res.get("blob", ""))),
            ]
        return []
    if kind == "resource_link":
        title = block.get("title") or block.get("name") or ""
        return [text_part(f"Resource Link: {title} at {block.get('uri', '')}")]
    return [text_part(json.dumps(block, ensure_ascii=False))]


def mcp_result_to_tool_result(result: dict[str, Any]) -> ToolResult:
    """Convert a `tools/call` result to content parts plus a display string."""
    content = result.get("content")
    if isinstance(content, str):
        parts = [text_part(content)]
    elif isinstance(content, list):
        parts = [p for block in content for p in _content_block_to_parts(block)]
    else:
        parts = []
        if "structuredContent" in result:
            parts.append(text_part(json.dumps(result["structuredContent"], ensure_ascii=False)))

    display = "\n".join(
        f"[{part_mime_type(p)}]" if is_binary_part(p) else str(p.get("text", ""))
        for p in parts
    )
    if result.get("isError") is True:
        message = display or "Tool reported an error."
        return ToolResult(content=parts or message, display=message, error=ToolError(message, ErrorKind.EXECUTION_FAILED))
    return ToolResult(content=parts, display=display)


@dataclass
class McpTool(BaseTool):
    spec: ToolDeclaration
    manager: "McpClientManager"
    origin_server: str
    remote_name: str
    is_trusted: bool = False

    @property
    def display_name(self) -> str:
        return f"{self.remote_name} ({self.origin_server} MCP Server)"

    @property
    def server_name(self) -> str | None:
        return self.origin_server

    @property
    def trusted(self) -> bool:
        return self.is_trusted

    @property
    def discovered(self) -> bool:
        return True

    def as_fully_qualified(self) -> "McpTool":
        """Same remote tool, registered as `<server>__<name>`."""
        name = sanitize_tool_name(f"{self.origin_server}__{self.remote_name}")
        return replace(self, spec=replace(self.spec, name=name))

    def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        result = self.manager.invoke(self.origin_server, self.remote_name, args, ctx.cancel)
        return mcp_result_to_tool_result(result)


def build_mcp_tools(manager: "McpClientManager", server_name: str, declarations: list[ToolDeclaration]) -> list[McpTool]:
    trusted = manager.is_trusted(server_name)
    tools: list[McpTool] = []
    for d in declarations:
        spec = ToolDeclaration(
            name=sanitize_tool_name(d.name),
            description=d.description,
            parameters=d.parameters,
            permission_key="mcp",
        )
        tools.append(McpTool(spec=spec, manager=manager, origin_server=server_name, remote_name=d.name, is_trusted=trusted))
    return tools
