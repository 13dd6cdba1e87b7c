from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

from ..config.models import ServerConfig
from ..errors import OperationCancelled, ServerConnectionError
from ..tools.base import ToolDeclaration
from ..util.cancel import CancelToken
from .client import McpClient
from .models import ServerStatus, apply_tool_filters
from .transports import JsonRpcTransport, create_transport

if TYPE_CHECKING:
    from ..events.store import EventStore

logger = logging.getLogger(__name__)

TransportFactory = Callable[[ServerConfig], JsonRpcTransport]


@dataclass
class ServerConnection:
    name: str
    config: ServerConfig
    status: ServerStatus = ServerStatus.DISCONNECTED
    client: McpClient | None = None
    tools: list[ToolDeclaration] = field(default_factory=list)
    error: str | None = None


class McpClientManager:
    """Owns one connection per configured server.

    Failures stay local: a server that cannot start, handshake or list tools
    is marked errored with no tools, and the others carry on.
    """

    def __init__(
        self,
        servers: dict[str, ServerConfig],
        *,
        events: Optional["EventStore"] = None,
        transport_factory: TransportFactory | None = None,
    ):
        self.servers = dict(servers)
        self.events = events
        self._transport_factory = transport_factory or create_transport
        self._lock = threading.Lock()
        self._connections: dict[str, ServerConnection] = {
            name: ServerConnection(name=name, config=cfg) for name, cfg in self.servers.items()
        }

    def _set_status(self, conn: ServerConnection, status: ServerStatus, error: str | None = None) -> None:
        conn.status = status
        conn.error = error
        if status == ServerStatus.ERRORED:
            logger.error("%s", error)
        else:
            logger.debug("[%s] %s", conn.name, status.value)
        if self.events is not None:
            data: dict[str, Any] = {"server": conn.name, "status": status.value}
            if error:
                data["error"] = error
            self.events.append("mcp.server_status", data)

    def connect(self, server_name: str, config: ServerConfig, cancel: CancelToken) -> list[ToolDeclaration]:
        """Open, handshake and list tools for one server; returns the filtered tools."""
        with self._lock:
            conn = self._connections.get(server_name)
            if conn is None:
                conn = self._connections[server_name] = ServerConnection(name=server_name, config=config)
            old = conn.client
            conn.config = config
            conn.client = None
            conn.tools = []
        if old is not None:
            old.close()

        self._set_status(conn, ServerStatus.CONNECTING)
        client: McpClient | None = None
        try:
            client = McpClient(server_name, config, self._transport_factory(config))
            conn.client = client
            client.connect(cancel)
            tools = client.list_tools(cancel)
        except OperationCancelled:
            if client is not None:
                client.close()
            self._set_status(conn, ServerStatus.DISCONNECTED, "cancelled")
            raise
        except Exception as e:
            if client is not None:
                client.close()
            if isinstance(e, ServerConnectionError):
                self._set_status(conn, ServerStatus.ERRORED, str(e))
                raise
            err = ServerConnectionError(server_name, str(e))
            self._set_status(conn, ServerStatus.ERRORED, str(err))
            raise err from e

        conn.tools = apply_tool_filters(tools, config.include_tools, config.exclude_tools)
        self._set_status(conn, ServerStatus.CONNECTED)
        logger.info("[%s] connected with %d tool(s)", server_name, len(conn.tools))
        return list(conn.tools)

    def _try_connect(self, name: str, cancel: CancelToken) -> list[ToolDeclaration]:
        try:
            return self.connect(name, self.servers[name], cancel)
        except ServerConnectionError:
            # already recorded on the connection
            return []

    def discover_all(self, cancel: CancelToken | None = None) -> dict[str, list[ToolDeclaration]]:
        """Connect every configured server concurrently; errored servers map to []."""
        cancel = cancel or CancelToken()
        names = list(self.servers)
        if not names:
            return {}
        with ThreadPoolExecutor(max_workers=len(names), thread_name_prefix="mcp-connect") as pool:
            futures = {name: pool.submit(self._try_connect, name, cancel) for name in names}
            results = {name: fut.result() for name, fut in futures.items()}
        cancel.raise_if_cancelled()
        return results

    def discover_server(self, server_name: str, cancel: CancelToken | None = None) -> list[ToolDeclaration]:
        """Manually (re)connect one server. Unknown names raise ServerConnectionError."""
        config = self.servers.get(server_name)
        if config is None:
            raise ServerConnectionError(server_name, "not configured")
        return self.connect(server_name, config, cancel or CancelToken())

    def invoke(self, server_name: str, tool_name: str, args: dict[str, Any], cancel: CancelToken) -> dict[str, Any]:
        conn = self.get_connection(server_name)
        if conn is None:
            raise ServerConnectionError(server_name, "not configured")
        if conn.status != ServerStatus.CONNECTED or conn.client is None:
            raise ServerConnectionError(server_name, f"not connected (status: {conn.status.value})")
        return conn.client.call_tool(tool_name, args, cancel)

    def get_connection(self, server_name: str) -> ServerConnection | None:
        with self._lock:
            return self._connections.get(server_name)

    def connections(self) -> list[ServerConnection]:
        with self._lock:
            return [self._connections[n] for n in sorted(self._connections)]

    def is_trusted(self, server_name: str) -> bool:
        cfg = self.servers.get(server_name)
        return bool(cfg and cfg.trusted)

    def close(self, server_name: str) -> None:
        with self._lock:
            conn = self._connections.get(server_name)
            client = conn.client if conn else None
            if conn is not None:
                conn.client = None
                conn.tools = []
        if client is not None:
            client.close()
        if conn is not None and conn.status != ServerStatus.CLOSED:
            self._set_status(conn, ServerStatus.CLOSED, conn.error if conn.status == ServerStatus.ERRORED else None)

    def close_all(self) -> None:
        with self._lock:
            names = list(self._connections)
        for name in names:
            try:
                self.close(name)
            except Exception as e:
                # keep releasing the remaining servers
                logger.warning("[%s] close failed: %s", name, e)
