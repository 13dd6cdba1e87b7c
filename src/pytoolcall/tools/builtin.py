from __future__ import annotations

from .registry import ToolRegistry
from .builtin_tools.bash_tool import ShellTool
from .builtin_tools.file_read import ReadFileTool
from .builtin_tools.listdir import ListDirectoryTool

def builtin_tools() -> list:
    return [ReadFileTool(), ListDirectoryTool(), ShellTool()]

def register_builtin_tools(registry: ToolRegistry) -> None:
    for tool in builtin_tools():
        registry.register(tool)
