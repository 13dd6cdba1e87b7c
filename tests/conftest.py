"""Shared fixtures for pytoolcall tests.

Provides in-memory fake tools, stdio example-server configs and isolation
from the user's real settings directory.
"""

import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import pytest

from pytoolcall.config.models import ServerConfig, StdioTransportConfig
from pytoolcall.tools.base import BaseTool, ToolContext, ToolDeclaration, ToolResult


@dataclass
class FakeTool(BaseTool):
    spec: ToolDeclaration
    handler: Optional[Callable[[ToolContext, dict[str, Any]], ToolResult]] = None
    server: Optional[str] = None
    label: Optional[str] = None
    is_discovered: bool = False
    calls: list = field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.label or self.spec.name

    @property
    def server_name(self) -> Optional[str]:
        return self.server

    @property
    def discovered(self) -> bool:
        return self.is_discovered

    def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        self.calls.append(args)
        if self.handler is not None:
            return self.handler(ctx, args)
        return ToolResult(content=f"ok:{self.spec.name}")


@pytest.fixture(autouse=True)
def no_global_settings(monkeypatch):
    """Keep the developer's global settings.json out of every test."""
    monkeypatch.setattr("pytoolcall.config.loader._global_candidate_paths", lambda: [])


@pytest.fixture
def make_tool():
    """Factory for FakeTool instances."""

    def _make(name, *, parameters=None, handler=None, server=None, label=None, permission_key="read", discovered=False):
        spec = ToolDeclaration(
            name=name,
            description=f"{name} tool",
            parameters=parameters or {},
            permission_key=permission_key,
        )
        return FakeTool(spec=spec, handler=handler, server=server, label=label, is_discovered=discovered)

    return _make


@pytest.fixture
def stdio_server():
    """Factory for ServerConfigs that run the bundled example MCP server."""

    def _make(name="srv", *args, timeout_ms=20_000, **overrides):
        transport = StdioTransportConfig(
            command=sys.executable,
            args=("-m", "pytoolcall.mcp.example_server", *args),
        )
        return ServerConfig(name=name, transport=transport, timeout_ms=timeout_ms, **overrides)

    return _make


@pytest.fixture(autouse=True)
def reset_package_logger():
    """configure_logging() detaches the package logger from root; undo it so caplog keeps working."""
    yield
    logger = logging.getLogger("pytoolcall")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
