from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

from ..tools.permissions import PermissionRule

DEFAULT_MCP_TIMEOUT_MS = 10 * 60 * 1000


@dataclass(frozen=True)
class StdioTransportConfig:
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None


@dataclass(frozen=True)
class SseTransportConfig:
    url: str
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class HttpTransportConfig:
    url: str
    headers: dict[str, str] = field(default_factory=dict)


TransportConfig = Union[StdioTransportConfig, SseTransportConfig, HttpTransportConfig]


def _str_map(obj: Any) -> dict[str, str]:
    if not isinstance(obj, dict):
        return {}
    return {str(k): str(v) for k, v in obj.items()}


def _name_set(obj: Any) -> frozenset[str] | None:
    if not isinstance(obj, list):
        return None
    return frozenset(str(x) for x in obj if isinstance(x, str))


@dataclass(frozen=True)
class ServerConfig:
    name: str
    transport: TransportConfig
    timeout_ms: int = DEFAULT_MCP_TIMEOUT_MS
    trusted: bool = False
    include_tools: frozenset[str] | None = None
    exclude_tools: frozenset[str] | None = None
    description: str = ""

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    @staticmethod
    def from_obj(name: str, obj: Any) -> "ServerConfig | None":
        """Parse one `mcpServers` entry; None when it names no usable transport.

        Exactly one of `command` (stdio), `url` (SSE) or `httpUrl` (HTTP)
        selects the transport; `command` may also be a full argv list.
        """
        if not isinstance(obj, dict):
            return None
        headers = _str_map(obj.get("headers"))
        transport: TransportConfig
        cmd = obj.get("command")
        if isinstance(cmd, list) and cmd and all(isinstance(x, str) for x in cmd):
            transport = StdioTransportConfig(
                command=cmd[0],
                args=tuple(cmd[1:]) + tuple(str(a) for a in obj.get("args") or []),
                env=_str_map(obj.get("env")),
                cwd=obj.get("cwd") if isinstance(obj.get("cwd"), str) else None,
            )
        elif isinstance(cmd, str) and cmd.strip():
            args = obj.get("args", [])
            if not isinstance(args, list):
                args = []
            transport = StdioTransportConfig(
                command=cmd,
                args=tuple(str(a) for a in args),
                env=_str_map(obj.get("env")),
                cwd=obj.get("cwd") if isinstance(obj.get("cwd"), str) else None,
            )
        elif isinstance(obj.get("httpUrl"), str) and obj["httpUrl"]:
            transport = HttpTransportConfig(url=obj["httpUrl"], headers=headers)
        elif isinstance(obj.get("url"), str) and obj["url"]:
            transport = SseTransportConfig(url=obj["url"], headers=headers)
        else:
            return None

        timeout = obj.get("timeout")
        if not isinstance(timeout, int) or isinstance(timeout, bool) or timeout <= 0:
            timeout = DEFAULT_MCP_TIMEOUT_MS
        desc = obj.get("description", "")
        return ServerConfig(
            name=name,
            transport=transport,
            timeout_ms=timeout,
            trusted=obj.get("trust") is True,
            include_tools=_name_set(obj.get("includeTools")),
            exclude_tools=_name_set(obj.get("excludeTools")),
            description=desc if isinstance(desc, str) else "",
        )


@dataclass
class Settings:
    """Settings loaded from JSON (global < project < explicit path)."""

    mcp_servers: dict[str, ServerConfig] = field(default_factory=dict)
    tool_discovery_command: str | None = None
    tool_call_command: str | None = None
    max_session_turns: int = -1
    fallback_model: str | None = None
    permissions: list[PermissionRule] = field(default_factory=list)
    debug: bool = False

    loaded_from: Path | None = None


class Config:
    """Runtime configuration handed to the core.

    The core only reads settings, and changes nothing but the active model and
    fallback flag.
    """

    def __init__(self, settings: Settings, model: str, *, fallback_model: str | None = None, debug: bool = False):
        self.settings = settings
        self._model = model
        self._fallback_model = fallback_model or settings.fallback_model
        self._fallback_mode = False
        self._debug = debug or settings.debug

    def get_max_session_turns(self) -> int:
        return self.settings.max_session_turns

    def get_model(self) -> str:
        return self._model

    def set_model(self, name: str) -> None:
        self._model = name

    def get_fallback_model(self) -> str | None:
        return self._fallback_model

    def set_fallback_mode(self, active: bool) -> None:
        self._fallback_mode = active

    def is_in_fallback_mode(self) -> bool:
        return self._fallback_mode

    def get_mcp_servers(self) -> dict[str, ServerConfig]:
        return dict(self.settings.mcp_servers)

    def get_tool_discovery_command(self) -> str | None:
        return self.settings.tool_discovery_command

    def get_tool_call_command(self) -> str | None:
        return self.settings.tool_call_command

    def get_debug_mode(self) -> bool:
        return self._debug
