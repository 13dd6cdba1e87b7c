from __future__ import annotations

import re
from enum import Enum
from typing import Any, Iterable

from ..tools.base import ToolDeclaration

PROTOCOL_VERSION = "2025-03-26"
CLIENT_INFO = {"name": "pytoolcall", "version": "0.1.0"}

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.\-]")
_MAX_NAME_LEN = 63


class ServerStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERRORED = "errored"
    CLOSED = "closed"


def sanitize_tool_name(name: str) -> str:
    """Make a server-provided name acceptable as a model function name."""
    valid = _INVALID_NAME_CHARS.sub("_", name)
    if len(valid) > _MAX_NAME_LEN:
        valid = valid[:28] + "___" + valid[-32:]
    return valid


def parse_tool_list(result: Any) -> tuple[list[ToolDeclaration], str | None]:
    """Parse a `tools/list` result into declarations plus the next page cursor."""
    if isinstance(result, dict):
        arr = result.get("tools", [])
        cursor = result.get("nextCursor")
    else:
        arr, cursor = result, None
    tools: list[ToolDeclaration] = []
    if isinstance(arr, list):
        for t in arr:
            if not isinstance(t, dict):
                continue
            name = t.get("name")
            desc = t.get("description", "")
            schema = t.get("inputSchema") or t.get("input_schema") or t.get("parameters") or {}
            if isinstance(name, str) and name:
                tools.append(ToolDeclaration(
                    name=name,
                    description=str(desc or ""),
                    parameters=schema if isinstance(schema, dict) else {},
                    permission_key="mcp",
                ))
    return tools, cursor if isinstance(cursor, str) and cursor else None


def apply_tool_filters(
    tools: Iterable[ToolDeclaration],
    include: frozenset[str] | None,
    exclude: frozenset[str] | None,
) -> list[ToolDeclaration]:
    out = []
    for t in tools:
        if include is not None and t.name not in include:
            continue
        if exclude and t.name in exclude:
            continue
        out.append(t)
    return out
