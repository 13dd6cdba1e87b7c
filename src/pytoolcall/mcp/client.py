from __future__ import annotations

import logging
from typing import Any

from ..config.models import ServerConfig
from ..errors import McpRequestError, ServerConnectionError
from ..tools.base import ToolDeclaration
from ..util.cancel import CancelToken
from .models import CLIENT_INFO, PROTOCOL_VERSION, parse_tool_list
from .transports import JsonRpcTransport

logger = logging.getLogger(__name__)

_MAX_PAGES = 100


class McpClient:
    """An MCP client session for one server over any transport.

    Methods used:
      - initialize + notifications/initialized (handshake)
      - tools/list -> { tools: [{name, description, inputSchema}], nextCursor? }
      - tools/call -> { content: [...], isError? }
    """

    def __init__(self, server_name: str, config: ServerConfig, transport: JsonRpcTransport):
        self.server_name = server_name
        self.config = config
        self.transport = transport
        self.server_info: dict[str, Any] = {}
        self.capabilities: dict[str, Any] = {}

    def connect(self, cancel: CancelToken) -> None:
        self.transport.start(cancel)
        try:
            res = self.transport.request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": CLIENT_INFO,
                },
                cancel=cancel,
            )
        except McpRequestError as e:
            raise ServerConnectionError(self.server_name, f"initialize failed: {e}") from e
        if isinstance(res, dict):
            info = res.get("serverInfo")
            self.server_info = info if isinstance(info, dict) else {}
            caps = res.get("capabilities")
            self.capabilities = caps if isinstance(caps, dict) else {}
        self.transport.notify("notifications/initialized")
        logger.debug("[%s] initialized: %s", self.server_name, self.server_info or "(no serverInfo)")

    def list_tools(self, cancel: CancelToken) -> list[ToolDeclaration]:
        tools: list[ToolDeclaration] = []
        cursor: str | None = None
        for _ in range(_MAX_PAGES):
            params = {"cursor": cursor} if cursor else {}
            res = self.transport.request("tools/list", params, cancel=cancel)
            page, cursor = parse_tool_list(res)
            tools.extend(page)
            if cursor is None:
                break
        else:
            logger.warning("[%s] tools/list returned more than %d pages; truncating", self.server_name, _MAX_PAGES)
        return tools

    def call_tool(self, name: str, arguments: dict[str, Any], cancel: CancelToken) -> dict[str, Any]:
        res = self.transport.request("tools/call", {"name": name, "arguments": arguments or {}}, cancel=cancel)
        if isinstance(res, dict):
            return res
        # tolerate servers that return a bare value
        return {"content": [{"type": "text", "text": "" if res is None else str(res)}]}

    def close(self) -> None:
        self.transport.close()
