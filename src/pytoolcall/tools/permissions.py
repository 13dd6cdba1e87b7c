from __future__ import annotations

import sys
from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import TYPE_CHECKING, Any, Literal

from rich.console import Console

if TYPE_CHECKING:
    from .base import Tool

Decision = Literal["allow", "ask", "deny"]


@dataclass
class PermissionRule:
    """A single permission rule.

    match supports:
    - "tool:<name_or_pattern>"  -> matches tool name only
    - otherwise: fnmatch against both permission_key and tool_name
    """

    match: str
    decision: Decision

    @staticmethod
    def from_obj(obj: Any) -> "PermissionRule | None":
        if not isinstance(obj, dict):
            return None
        m = obj.get("match")
        d = obj.get("decision")
        if not isinstance(m, str) or d not in {"allow", "ask", "deny"}:
            return None
        return PermissionRule(match=m, decision=d)


@dataclass
class PermissionConfig:
    defaults: dict[str, Decision] = field(default_factory=lambda: {
        "read": "allow",
        "edit": "ask",
        "execute": "ask",
        "mcp": "ask",
        "discovered": "ask",
    })
    rules: list[PermissionRule] = field(default_factory=list)

    def set(self, key: str, decision: Decision) -> None:
        self.defaults[key] = decision

    def apply_rules(self, rules: list[PermissionRule]) -> None:
        # later rules win.
        self.rules.extend(rules)

    def _match_rules(self, permission_key: str, tool_name: str) -> Decision | None:
        decision: Decision | None = None
        for rule in self.rules:
            m = rule.match
            if m.startswith("tool:"):
                if fnmatch(tool_name, m[len("tool:"):]):
                    decision = rule.decision
            elif fnmatch(permission_key, m) or fnmatch(tool_name, m):
                decision = rule.decision
        return decision

    def decide(self, permission_key: str, tool_name: str) -> Decision:
        r = self._match_rules(permission_key, tool_name)
        if r is not None:
            return r
        return self.defaults.get(permission_key, self.defaults.get(tool_name, "ask"))


class PermissionGate:
    """Decides whether a call may run, asking a human when required.

    Tools from trusted servers skip confirmation entirely.
    """

    def __init__(self, config: PermissionConfig | None = None, auto_approve: bool = False, console: Console | None = None):
        self.config = config or PermissionConfig()
        self.auto_approve = auto_approve
        self.console = console or Console(stderr=True)

    def decide(self, tool: "Tool", args_preview: str) -> bool:
        if tool.trusted:
            return True
        decision = self.config.decide(tool.spec.permission_key, tool.name)
        if decision == "allow":
            return True
        if decision == "deny":
            self.console.print(f"[red]Denied[/red] tool {tool.name} ({tool.spec.permission_key})")
            return False

        # ask
        if self.auto_approve:
            return True
        if not sys.stdin.isatty():
            self.console.print(
                f"[red]Denied[/red] tool {tool.name}: confirmation required but no terminal is attached (use --yes)."
            )
            return False

        self.console.print(f"\n[yellow]Tool requires approval[/yellow]: [bold]{tool.display_name}[/bold]\n{args_preview}")
        resp = self.console.input("Approve? [y/N] ").strip().lower()
        return resp in {"y", "yes"}
