"""Tests for settings loading, server config parsing and the provider registry."""

import json
import logging

import pytest

from pytoolcall.config.loader import expand_env, load_settings
from pytoolcall.config.models import (
    DEFAULT_MCP_TIMEOUT_MS,
    Config,
    HttpTransportConfig,
    ServerConfig,
    Settings,
    SseTransportConfig,
    StdioTransportConfig,
)
from pytoolcall.llm.factory import load_provider_registry, resolve_provider


def _write(path, obj):
    path.write_text(json.dumps(obj), encoding="utf-8")
    return path


def test_server_transport_selection():
    stdio = ServerConfig.from_obj("a", {"command": "node", "args": ["srv.js", 3], "env": {"K": 1}})
    sse = ServerConfig.from_obj("b", {"url": "http://h/sse", "headers": {"X": "y"}})
    http = ServerConfig.from_obj("c", {"httpUrl": "http://h/mcp", "url": "ignored"})

    assert stdio.transport == StdioTransportConfig(command="node", args=("srv.js", "3"), env={"K": "1"})
    assert sse.transport == SseTransportConfig(url="http://h/sse", headers={"X": "y"})
    assert isinstance(http.transport, HttpTransportConfig)
    assert ServerConfig.from_obj("d", {"description": "nothing to run"}) is None


def test_server_options():
    cfg = ServerConfig.from_obj("s", {
        "command": ["python", "-m", "srv"],
        "timeout": 1500,
        "trust": True,
        "includeTools": ["a", "b"],
        "excludeTools": ["b"],
    })

    assert cfg.transport.command == "python"
    assert cfg.transport.args == ("-m", "srv")
    assert cfg.timeout_seconds == 1.5
    assert cfg.trusted is True
    assert cfg.include_tools == frozenset({"a", "b"})
    assert cfg.exclude_tools == frozenset({"b"})

    default = ServerConfig.from_obj("s", {"command": "x", "timeout": "soon", "trust": "yes"})
    assert default.timeout_ms == DEFAULT_MCP_TIMEOUT_MS
    assert default.trusted is False
    assert default.include_tools is None


def test_expand_env(monkeypatch):
    monkeypatch.setenv("TOKEN", "abc")
    monkeypatch.delenv("MISSING", raising=False)

    assert expand_env({"h": ["Bearer ${TOKEN}", "$TOKEN-$MISSING"], "n": 3}) == {"h": ["Bearer abc", "abc-"], "n": 3}


def test_project_settings_override_global(tmp_path, monkeypatch):
    global_file = _write(tmp_path / "global.json", {
        "maxSessionTurns": 5,
        "mcpServers": {"g": {"command": "g"}},
        "permissions": [{"match": "execute", "decision": "allow"}],
    })
    monkeypatch.setattr("pytoolcall.config.loader._global_candidate_paths", lambda: [global_file])
    project = tmp_path / "proj"
    project.mkdir()
    _write(project / ".pytoolcall.json", {
        "maxSessionTurns": 2,
        "fallbackModel": " backup ",
        "toolDiscoveryCommand": "./discover.sh",
        "mcpServers": {"p": {"httpUrl": "http://h/mcp"}},
    })

    settings = load_settings(cwd=project)

    assert settings.max_session_turns == 2
    assert settings.fallback_model == "backup"
    assert settings.tool_discovery_command == "./discover.sh"
    assert sorted(settings.mcp_servers) == ["g", "p"]
    assert [r.decision for r in settings.permissions] == ["allow"]
    assert settings.loaded_from == project / ".pytoolcall.json"


def test_explicit_settings_last(tmp_path):
    _write(tmp_path / ".pytoolcall.json", {"maxSessionTurns": 2, "debug": True})
    explicit = _write(tmp_path / "override.json", {"maxSessionTurns": 9})

    settings = load_settings(cwd=tmp_path, explicit_path=explicit)

    assert settings.max_session_turns == 9
    assert settings.debug is True

    with pytest.raises(FileNotFoundError):
        load_settings(cwd=tmp_path, explicit_path=tmp_path / "nope.json")


def test_broken_settings_are_skipped(tmp_path, caplog):
    (tmp_path / ".pytoolcall.json").write_text("{not json", encoding="utf-8")

    with caplog.at_level(logging.WARNING, logger="pytoolcall"):
        settings = load_settings(cwd=tmp_path)

    assert settings.max_session_turns == -1
    assert "Ignoring unreadable settings file" in caplog.text


def test_config_fallback_and_model():
    config = Config(Settings(fallback_model="from-settings"), "primary")

    assert config.get_fallback_model() == "from-settings"
    assert Config(Settings(fallback_model="s"), "m", fallback_model="p").get_fallback_model() == "p"

    config.set_model("from-settings")
    config.set_fallback_mode(True)
    assert config.get_model() == "from-settings"
    assert config.is_in_fallback_mode()


PROVIDERS = """
providers:
  Local:
    base_url: http://localhost:8000/v1
    model: small
    api_key: ${LOCAL_KEY}
    fallback_model: tiny
    max_retries: 1
"""


def test_provider_registry(tmp_path, monkeypatch):
    monkeypatch.setenv("LOCAL_KEY", "sk-1")
    path = tmp_path / "pytoolcall.yaml"
    path.write_text(PROVIDERS, encoding="utf-8")

    reg = load_provider_registry(path)
    cfg = reg.get("local")
    assert cfg.api_key == "sk-1"
    assert cfg.fallback_model == "tiny"
    assert cfg.max_retries == 1
    with pytest.raises(ValueError, match="Known providers: local"):
        reg.get("other")

    client, _ = resolve_provider("LOCAL", model="big", yaml_path=path)
    assert client.model == "big"
    assert client.base_url == "http://localhost:8000/v1"
    assert client.max_retries == 1


def test_provider_missing_key(tmp_path, monkeypatch):
    monkeypatch.delenv("LOCAL_KEY", raising=False)
    path = tmp_path / "pytoolcall.yaml"
    path.write_text(PROVIDERS, encoding="utf-8")

    with pytest.raises(ValueError, match="LOCAL_KEY"):
        load_provider_registry(path)
