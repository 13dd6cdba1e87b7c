from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any

from platformdirs import user_config_dir

from .models import Settings, ServerConfig
from ..tools.permissions import PermissionRule

APP_NAME = "pytoolcall"

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}|\$(\w+)")

logger = logging.getLogger(__name__)


def _candidate_paths(cwd: Path) -> list[Path]:
    # project-level (higher priority)
    return [
        cwd / ".pytoolcall.json",
        cwd / "pytoolcall.json",
    ]


def _global_candidate_paths() -> list[Path]:
    cfg_dir = Path(user_config_dir(APP_NAME))
    return [cfg_dir / "settings.json"]


def _load_json(p: Path) -> dict[str, Any] | None:
    try:
        obj = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", p, e)
        return None
    if isinstance(obj, dict):
        return obj
    logger.warning("Ignoring settings file %s: top level is not an object", p)
    return None


def _merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge_dicts(out[k], v)  # type: ignore
        else:
            out[k] = v
    return out


def expand_env(value: Any) -> Any:
    """Expand ${VAR} / $VAR in strings (recursively); unset variables become ''."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1) or m.group(2), ""), value)
    if isinstance(value, list):
        return [expand_env(v) for v in value]
    if isinstance(value, dict):
        return {k: expand_env(v) for k, v in value.items()}
    return value


def parse_settings(merged: dict[str, Any]) -> Settings:
    cfg = Settings()

    mcp = merged.get("mcpServers") or merged.get("mcp_servers") or {}
    if isinstance(mcp, dict):
        for name, obj in mcp.items():
            if not isinstance(name, str):
                continue
            sc = ServerConfig.from_obj(name, expand_env(obj))
            if sc is None:
                logger.warning("Skipping MCP server '%s': no command, url or httpUrl configured", name)
                continue
            cfg.mcp_servers[name] = sc

    for key, attr in (("toolDiscoveryCommand", "tool_discovery_command"), ("toolCallCommand", "tool_call_command")):
        v = merged.get(key)
        if isinstance(v, str) and v.strip():
            setattr(cfg, attr, v.strip())

    turns = merged.get("maxSessionTurns")
    if isinstance(turns, int) and not isinstance(turns, bool):
        cfg.max_session_turns = turns

    fm = merged.get("fallbackModel")
    if isinstance(fm, str) and fm.strip():
        cfg.fallback_model = fm.strip()

    perms = merged.get("permissions", [])
    if isinstance(perms, list):
        for it in perms:
            r = PermissionRule.from_obj(it)
            if r is not None:
                cfg.permissions.append(r)

    cfg.debug = merged.get("debug") is True
    return cfg


def load_settings(*, cwd: Path, explicit_path: Path | None = None) -> Settings:
    """Load settings.

    Merge order: global < project < explicit_path.
    """
    merged: dict[str, Any] = {}
    loaded_from: Path | None = None

    for p in _global_candidate_paths():
        if p.is_file():
            obj = _load_json(p)
            if obj is not None:
                merged = _merge_dicts(merged, obj)
                loaded_from = p

    for p in _candidate_paths(cwd):
        if p.is_file():
            obj = _load_json(p)
            if obj is not None:
                merged = _merge_dicts(merged, obj)
                loaded_from = p
                break  # first match wins for project-level

    if explicit_path is not None:
        p = explicit_path.expanduser().resolve()
        if not p.is_file():
            raise FileNotFoundError(f"Settings file not found: {p}")
        obj = _load_json(p)
        if obj is not None:
            merged = _merge_dicts(merged, obj)
            loaded_from = p

    cfg = parse_settings(merged)
    cfg.loaded_from = loaded_from
    return cfg
