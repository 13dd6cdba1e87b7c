"""Tests for ToolRegistry catalog semantics and command-based discovery."""

import json
import logging
import shlex
import sys
import threading
import time

import pytest

from pytoolcall.config.models import Config, Settings
from pytoolcall.errors import ErrorKind, ToolDiscoveryError
from pytoolcall.tools.base import ToolContext
from pytoolcall.tools.discovered import discover_tools_from_command
from pytoolcall.tools.registry import ToolRegistry
from pytoolcall.util.subprocess import OutputLimitExceeded, run_cmd


def test_get_returns_last_registered(make_tool, caplog):
    """Registering a name twice replaces the first tool and warns."""
    registry = ToolRegistry()
    first = make_tool("dup")
    second = make_tool("dup")

    registry.register(first)
    with caplog.at_level(logging.WARNING, logger="pytoolcall"):
        registry.register(second)

    assert registry.get("dup") is second
    assert len(registry.all()) == 1
    assert "already registered" in caplog.text


def test_get_unknown_returns_none():
    """Unknown names are reported as absent rather than raising."""
    assert ToolRegistry().get("nope") is None


def test_by_server_sorted_and_all_interleaved(make_tool):
    """Server tools come back sorted by name; all() interleaves local tools by display name."""
    registry = ToolRegistry()
    for name in ["zebra-tool", "apple-tool", "banana-tool"]:
        registry.register(make_tool(name, server="srv1", label=f"{name} (srv1 MCP Server)"))
    registry.register(make_tool("regular-tool"))

    assert [t.name for t in registry.by_server("srv1")] == ["apple-tool", "banana-tool", "zebra-tool"]
    assert [t.name for t in registry.all()] == ["apple-tool", "banana-tool", "regular-tool", "zebra-tool"]


def test_declarations_follow_catalog_order(make_tool):
    registry = ToolRegistry()
    registry.register(make_tool("b"))
    registry.register(make_tool("a"))

    assert [d.name for d in registry.declarations()] == ["a", "b"]


def test_replace_server_tools_leaves_other_servers(make_tool):
    """Refreshing one server never touches another server's entries."""
    registry = ToolRegistry()
    registry.register(make_tool("one", server="s1"))
    registry.register(make_tool("two", server="s2"))

    registry.replace_server_tools("s1", [make_tool("three", server="s1")])

    assert [t.name for t in registry.by_server("s1")] == ["three"]
    assert [t.name for t in registry.by_server("s2")] == ["two"]


def test_remove_server_tools(make_tool):
    registry = ToolRegistry()
    registry.register(make_tool("one", server="s1"))
    registry.register(make_tool("local"))

    registry.remove_server_tools("s1")

    assert [t.name for t in registry.all()] == ["local"]


def _discovery_script(tmp_path, payload):
    script = tmp_path / "discover.py"
    script.write_text(f"import sys\nsys.stdout.write({json.dumps(json.dumps(payload))})\n", encoding="utf-8")
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"


def _config(**settings):
    return Config(Settings(**settings), "test-model")


def test_discovery_preserves_schemas_verbatim(tmp_path):
    """Every emitted declaration is registered with its schema unchanged."""
    schemas = [
        {"type": "object", "properties": {"x": {"type": "integer", "x-custom": [1, 2]}}, "additionalProperties": False},
        {"type": "object", "$defs": {"a": {"type": "string"}}, "properties": {"a": {"$ref": "#/$defs/a"}}},
        {"weird": {"nested": True}, "type": "object"},
    ]
    payload = [
        {"function_declarations": [
            {"name": "alpha", "description": "A", "parametersJsonSchema": schemas[0]},
            {"name": "beta", "description": "B", "parameters": schemas[1]},
        ]},
        {"name": "gamma", "description": "C", "parameters": schemas[2]},
    ]
    registry = ToolRegistry(_config(tool_discovery_command=_discovery_script(tmp_path, payload)), cwd=str(tmp_path))

    registry.discover_all()

    tools = {t.name: t for t in registry.all()}
    assert sorted(tools) == ["alpha", "beta", "gamma"]
    for name, schema in zip(["alpha", "beta", "gamma"], schemas):
        assert json.dumps(tools[name].spec.parameters) == json.dumps(schema)
        assert tools[name].discovered is True


def test_rediscovery_replaces_discovered_tools(tmp_path, make_tool):
    """discover_all drops previously discovered tools but keeps built-ins."""
    payload = [{"name": "fresh", "parameters": {"type": "object"}}]
    registry = ToolRegistry(_config(tool_discovery_command=_discovery_script(tmp_path, payload)), cwd=str(tmp_path))
    registry.register(make_tool("builtin"))
    registry.register(make_tool("stale", discovered=True))

    registry.discover_all()

    assert [t.name for t in registry.all()] == ["builtin", "fresh"]


def test_failing_discovery_command_is_logged_not_raised(tmp_path, make_tool, caplog):
    script = tmp_path / "fail.py"
    script.write_text("import sys\nsys.exit(3)\n", encoding="utf-8")
    command = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"
    registry = ToolRegistry(_config(tool_discovery_command=command), cwd=str(tmp_path))
    registry.register(make_tool("builtin"))

    with caplog.at_level(logging.ERROR, logger="pytoolcall"):
        registry.discover_all()

    assert [t.name for t in registry.all()] == ["builtin"]
    assert "exit code 3" in caplog.text


def test_discovered_tool_runs_call_command(tmp_path):
    """The call command gets the tool name as last argument and the args as JSON on stdin."""
    script = tmp_path / "call.py"
    script.write_text(
        "import json, sys\n"
        "args = json.load(sys.stdin)\n"
        "if sys.argv[-1] == 'add':\n"
        "    print(args['a'] + args['b'])\n"
        "else:\n"
        "    sys.stderr.write('unknown tool')\n"
        "    sys.exit(2)\n",
        encoding="utf-8",
    )
    call = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"
    payload = [{"name": "add", "parameters": {"type": "object"}}, {"name": "other"}]
    registry = ToolRegistry(
        _config(tool_discovery_command=_discovery_script(tmp_path, payload), tool_call_command=call),
        cwd=str(tmp_path),
    )
    registry.discover_all()
    ctx = ToolContext(cwd=str(tmp_path))

    ok = registry.get("add").execute(ctx, {"a": 2, "b": 3})
    failed = registry.get("other").execute(ctx, {})

    assert ok.content.strip() == "5"
    assert not ok.is_error
    assert failed.error.kind == ErrorKind.EXECUTION_FAILED
    assert failed.content.splitlines() == [
        "Stdout: (empty)",
        "Stderr: unknown tool",
        "Error: (none)",
        "Exit Code: 2",
        "Signal: (none)",
    ]
    assert "`" + call + " add`" in registry.get("add").spec.description


def test_discovery_output_over_limit_fails_fast(tmp_path, monkeypatch):
    """A command that floods stdout and keeps running is killed once the cap is passed."""
    monkeypatch.setattr("pytoolcall.tools.discovered.MAX_OUTPUT_BYTES", 1024)
    script = tmp_path / "flood.py"
    script.write_text(
        "import sys, time\n"
        "sys.stdout.write('x' * 4096)\n"
        "sys.stdout.flush()\n"
        "time.sleep(30)\n",
        encoding="utf-8",
    )
    command = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"

    started = time.monotonic()
    with pytest.raises(ToolDiscoveryError, match="exceeded size limit of 1024 bytes"):
        discover_tools_from_command(command, None, cwd=str(tmp_path))

    assert time.monotonic() - started < 10


def test_run_cmd_output_cap_counts_stderr():
    with pytest.raises(OutputLimitExceeded) as info:
        run_cmd([sys.executable, "-c", "import sys; sys.stderr.write('e' * 5000)"], max_output_bytes=100)

    assert info.value.limit == 100


def test_rediscovery_waits_for_server_write_lock(make_tool):
    """Dropping a server's tools on rediscovery goes through that server's write lock."""
    registry = ToolRegistry()
    registry.register(make_tool("remote", server="srv", discovered=True))
    held = threading.Event()
    release = threading.Event()

    def hold():
        with registry._server_write("srv"):
            held.set()
            release.wait(5)

    holder = threading.Thread(target=hold)
    holder.start()
    held.wait(5)
    worker = threading.Thread(target=registry.discover_all)
    worker.start()
    worker.join(0.3)

    assert worker.is_alive()
    assert registry.get("remote") is not None

    release.set()
    worker.join(5)
    holder.join(5)
    assert registry.get("remote") is None
