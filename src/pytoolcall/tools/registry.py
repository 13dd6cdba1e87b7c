from __future__ import annotations
import logging
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Dict, Iterator, Optional

from ..errors import OperationCancelled
from ..mcp.bridge import McpTool, build_mcp_tools
from ..util.cancel import CancelToken
from .base import Tool, ToolDeclaration
from .discovered import discover_tools_from_command

if TYPE_CHECKING:
    from ..config.models import Config
    from ..mcp.manager import McpClientManager

logger = logging.getLogger(__name__)

class ToolRegistry:
    """Name-addressable catalog of built-in, shell-discovered and server tools.

    Reads take the catalog lock only long enough to copy; refreshing one
    server's tools additionally holds that server's write lock, so other
    servers' entries stay readable and are never touched.
    """

    def __init__(
        self,
        config: Optional["Config"] = None,
        mcp_manager: Optional["McpClientManager"] = None,
        *,
        cwd: Optional[str] = None,
    ):
        self.config = config
        self.mcp_manager = mcp_manager
        self.cwd = cwd
        self._tools: Dict[str, Tool] = {}
        self._lock = threading.RLock()
        self._server_locks: Dict[str, threading.Lock] = {}

    def register(self, tool: Tool) -> None:
        """Insert by name. A taken name is overwritten, except by a server tool,
        which moves aside to `<server>__<name>`.
        """
        with self._lock:
            if tool.name in self._tools:
                if isinstance(tool, McpTool):
                    tool = tool.as_fully_qualified()
                else:
                    logger.warning('Tool with name "%s" is already registered. Overwriting.', tool.name)
            self._tools[tool.name] = tool

    def unregister(self, name: str) -> Optional[Tool]:
        with self._lock:
            return self._tools.pop(name, None)

    def get(self, name: str) -> Optional[Tool]:
        with self._lock:
            return self._tools.get(name)

    def all(self) -> list[Tool]:
        with self._lock:
            tools = list(self._tools.values())
        return sorted(tools, key=lambda t: t.display_name)

    def by_server(self, server_name: str) -> list[Tool]:
        with self._lock:
            tools = [t for t in self._tools.values() if t.server_name == server_name]
        return sorted(tools, key=lambda t: t.name)

    def declarations(self) -> list[ToolDeclaration]:
        return [t.spec for t in self.all()]

    @contextmanager
    def _server_write(self, server_name: str) -> Iterator[None]:
        with self._lock:
            lock = self._server_locks.setdefault(server_name, threading.Lock())
        with lock:
            yield

    def remove_server_tools(self, server_name: str) -> None:
        with self._server_write(server_name):
            with self._lock:
                for name in [n for n, t in self._tools.items() if t.server_name == server_name]:
                    del self._tools[name]

    def replace_server_tools(self, server_name: str, tools: list[Tool]) -> None:
        """Swap one server's tool set; caller must already hold its write lock."""
        with self._lock:
            for name in [n for n, t in self._tools.items() if t.server_name == server_name]:
                del self._tools[name]
        for tool in tools:
            self.register(tool)

    def _remove_discovered_tools(self) -> None:
        with self._lock:
            servers = {t.server_name for t in self._tools.values() if t.discovered and t.server_name}
            for name in [n for n, t in self._tools.items() if t.discovered and not t.server_name]:
                del self._tools[name]
        for server_name in sorted(servers):
            self.remove_server_tools(server_name)

    def discover_all(self, cancel: CancelToken | None = None) -> None:
        """(Re)discover tools from the discovery command and every configured server.

        A failing source is logged and skipped; the others still register.
        """
        cancel = cancel or CancelToken()
        self._remove_discovered_tools()
        self._discover_from_command(cancel)
        self._discover_from_servers(cancel)

    def _discover_from_command(self, cancel: CancelToken) -> None:
        if self.config is None:
            return
        command = self.config.get_tool_discovery_command()
        if not command:
            return
        try:
            tools = discover_tools_from_command(
                command, self.config.get_tool_call_command(), cancel=cancel, cwd=self.cwd,
            )
        except OperationCancelled:
            raise
        except Exception as e:
            logger.error('Tool discovery command "%s" failed: %s', command, e)
            return
        for tool in tools:
            self.register(tool)

    def _discover_from_servers(self, cancel: CancelToken) -> None:
        if self.mcp_manager is None:
            return
        discovered = self.mcp_manager.discover_all(cancel)
        for server_name, declarations in discovered.items():
            with self._server_write(server_name):
                self.replace_server_tools(server_name, build_mcp_tools(self.mcp_manager, server_name, declarations))

    def discover_server(self, server_name: str, cancel: CancelToken | None = None) -> list[Tool]:
        """Explicitly reconnect one server and refresh only its entries."""
        if self.mcp_manager is None:
            return []
        cancel = cancel or CancelToken()
        with self._server_write(server_name):
            declarations = self.mcp_manager.discover_server(server_name, cancel)
            tools = build_mcp_tools(self.mcp_manager, server_name, declarations)
            self.replace_server_tools(server_name, tools)
        return self.by_server(server_name)
