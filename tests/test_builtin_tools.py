"""Tests for the built-in file, directory and shell tools."""

import base64
import shutil
import sys
import threading

import pytest

from pytoolcall.errors import ErrorKind, OperationCancelled
from pytoolcall.session.models import ToolCallRequest
from pytoolcall.tools.base import ToolContext
from pytoolcall.tools.builtin import register_builtin_tools
from pytoolcall.tools.builtin_tools.bash_tool import ShellTool
from pytoolcall.tools.builtin_tools.file_read import ReadFileTool
from pytoolcall.tools.builtin_tools.listdir import ListDirectoryTool
from pytoolcall.tools.executor import execute_tool_call
from pytoolcall.tools.registry import ToolRegistry
from pytoolcall.util.cancel import CancelToken

needs_sh = pytest.mark.skipif(sys.platform == "win32" or not shutil.which("sh"), reason="POSIX shell required")


def test_builtins_are_registered():
    registry = ToolRegistry()
    register_builtin_tools(registry)

    assert [d.name for d in registry.declarations()] == ["list_directory", "read_file", "run_shell_command"]


def test_read_file_line_range(tmp_path):
    (tmp_path / "notes.txt").write_text("one\ntwo\nthree\nfour\n", encoding="utf-8")

    res = ReadFileTool().execute(ToolContext(cwd=str(tmp_path)), {"path": "notes.txt", "start_line": 2, "end_line": 3})

    assert res.content == "two\nthree"
    assert not res.is_error


def test_read_file_truncates(tmp_path):
    (tmp_path / "big.txt").write_text("x" * 50, encoding="utf-8")

    res = ReadFileTool().execute(ToolContext(cwd=str(tmp_path)), {"path": "big.txt", "max_chars": 10})

    assert res.content == "x" * 10 + "\n... (truncated)"


def test_read_file_image_is_inline_data(tmp_path):
    (tmp_path / "dot.png").write_bytes(b"\x89PNG\r\n")
    registry = ToolRegistry()
    register_builtin_tools(registry)
    request = ToolCallRequest(call_id="c1", name="read_file", args={"path": "dot.png"}, prompt_id="p")

    resp = execute_tool_call(registry, request, CancelToken(), cwd=str(tmp_path))

    assert resp.response_parts[0]["function_response"]["response"] == {
        "output": "Binary content of type image/png was processed."
    }
    assert resp.response_parts[1] == {
        "inline_data": {"mime_type": "image/png", "data": base64.b64encode(b"\x89PNG\r\n").decode()}
    }


def test_read_file_refuses_escape_and_missing(tmp_path):
    tool = ReadFileTool()
    ctx = ToolContext(cwd=str(tmp_path))

    assert "escapes working directory" in tool.execute(ctx, {"path": "../secret"}).error.message
    assert tool.execute(ctx, {"path": "nope.txt"}).error.message == "File not found: nope.txt"


def test_read_file_requires_path(tmp_path):
    registry = ToolRegistry()
    register_builtin_tools(registry)
    request = ToolCallRequest(call_id="c1", name="read_file", args={}, prompt_id="p")

    resp = execute_tool_call(registry, request, CancelToken(), cwd=str(tmp_path))

    assert resp.error.kind == ErrorKind.INVALID_PARAMS
    assert "'path' is a required property" in resp.error.message


def test_list_directory(tmp_path):
    (tmp_path / "b.txt").write_text("", encoding="utf-8")
    (tmp_path / "a").mkdir()
    (tmp_path / "a" / "inner.txt").write_text("", encoding="utf-8")
    ctx = ToolContext(cwd=str(tmp_path))

    flat = ListDirectoryTool().execute(ctx, {})
    deep = ListDirectoryTool().execute(ctx, {"recursive": True})
    capped = ListDirectoryTool().execute(ctx, {"max_entries": 1})

    assert flat.content == "a/\nb.txt"
    assert deep.content.splitlines() == ["a/", "b.txt", "a/inner.txt"]
    assert capped.content == "a/\n... (truncated at 1 entries)"
    assert ListDirectoryTool().execute(ctx, {"path": "b.txt"}).error.message == "Not a directory: b.txt"


@needs_sh
def test_shell_success_and_failure(tmp_path):
    ctx = ToolContext(cwd=str(tmp_path))

    ok = ShellTool().execute(ctx, {"command": "echo hi"})
    bad = ShellTool().execute(ctx, {"command": "echo oops >&2; exit 4"})

    assert ok.content.splitlines() == [
        "Command: echo hi",
        "Directory: (root)",
        "Stdout: hi",
        "Stderr: (empty)",
        "Error: (none)",
        "Exit Code: 0",
        "Signal: (none)",
    ]
    assert bad.is_error
    assert "Stderr: oops" in bad.content
    assert "Exit Code: 4" in bad.content


@needs_sh
def test_shell_runs_in_subdirectory(tmp_path):
    (tmp_path / "sub").mkdir()
    ctx = ToolContext(cwd=str(tmp_path))

    res = ShellTool().execute(ctx, {"command": "pwd", "directory": "sub"})

    assert "Directory: sub" in res.content
    assert f"Stdout: {(tmp_path / 'sub').resolve()}" in res.content
    assert "escapes working directory" in ShellTool().execute(ctx, {"command": "pwd", "directory": ".."}).error.message


@needs_sh
def test_shell_timeout(tmp_path):
    res = ShellTool().execute(ToolContext(cwd=str(tmp_path)), {"command": "sleep 5", "timeout": 1})

    assert res.error.message == "Command timed out after 1s: sleep 5"


@needs_sh
def test_shell_cancellation_kills_command(tmp_path):
    cancel = CancelToken()
    timer = threading.Timer(0.3, cancel.cancel)
    timer.start()
    try:
        with pytest.raises(OperationCancelled):
            ShellTool().execute(ToolContext(cwd=str(tmp_path), cancel=cancel), {"command": "sleep 10"})
    finally:
        timer.cancel()
