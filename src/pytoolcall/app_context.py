from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from rich.console import Console

from .config.loader import load_settings
from .config.models import Config
from .events.store import EventStore
from .llm.chat import ChatClient
from .llm.factory import resolve_provider
from .llm.openai_compat import OpenAICompatProvider
from .mcp.manager import McpClientManager
from .tools.builtin import register_builtin_tools
from .tools.permissions import PermissionConfig, PermissionGate
from .tools.registry import ToolRegistry
from .util.cancel import CancelToken

logger = logging.getLogger(__name__)

NO_MODEL = "(none)"


@dataclass
class AppContext:
    """Every service one CLI invocation needs, built up front and closed explicitly."""

    cwd: Path
    session_id: str
    config: Config
    registry: ToolRegistry
    manager: McpClientManager
    gate: PermissionGate
    provider: OpenAICompatProvider | None = None
    chat: ChatClient | None = None
    events: EventStore | None = None
    err_console: Console = field(default_factory=lambda: Console(stderr=True))
    trace: bool = False

    def close(self) -> None:
        """Release server connections and the HTTP client; safe to call twice."""
        self.manager.close_all()
        if self.provider is not None:
            self.provider.close()

    @staticmethod
    def from_env(
        cwd: Path,
        *,
        provider: Optional[str] = None,
        provider_yaml: Optional[Path] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        settings_path: Optional[Path] = None,
        session_id: Optional[str] = None,
        auto_approve: bool = False,
        debug: bool = False,
        trace: bool = False,
        record_events: bool = True,
        cancel: CancelToken | None = None,
        err_console: Console | None = None,
    ) -> "AppContext":
        settings = load_settings(cwd=cwd, explicit_path=settings_path)
        err_console = err_console or Console(stderr=True)

        provider_client: OpenAICompatProvider | None = None
        fallback_model: str | None = None
        if provider:
            provider_client, pcfg = resolve_provider(
                provider=provider,
                model=model,
                base_url=base_url,
                api_key=api_key,
                yaml_path=provider_yaml,
            )
            fallback_model = pcfg.fallback_model
        config = Config(
            settings,
            provider_client.model if provider_client else (model or NO_MODEL),
            fallback_model=fallback_model,
            debug=debug,
        )

        session_id = session_id or uuid.uuid4().hex[:12]
        events = EventStore.open(session_id) if record_events else None

        manager = McpClientManager(config.get_mcp_servers(), events=events)
        registry = ToolRegistry(config, manager, cwd=str(cwd))
        register_builtin_tools(registry)
        try:
            registry.discover_all(cancel)
        except BaseException:
            manager.close_all()
            raise

        perm_cfg = PermissionConfig()
        perm_cfg.apply_rules(settings.permissions)
        if auto_approve:
            perm_cfg.set("execute", "allow")
        gate = PermissionGate(config=perm_cfg, auto_approve=auto_approve, console=err_console)

        chat = ChatClient(provider_client, config, registry) if provider_client else None
        logger.debug(
            "context ready: %d tool(s), %d server(s), settings=%s",
            len(registry.all()), len(config.get_mcp_servers()), settings.loaded_from,
        )
        return AppContext(
            cwd=cwd,
            session_id=session_id,
            config=config,
            registry=registry,
            manager=manager,
            gate=gate,
            provider=provider_client,
            chat=chat,
            events=events,
            err_console=err_console,
            trace=trace,
        )
