"""Tools package for agentloop."""

from agentloop.tools.registry import (
    FunctionTool,
    Tool,
    ToolProvider,
    ToolRegistry,
    ToolResult,
    tool,
)
from agentloop.tools.editor import StrReplaceEditorTool
from agentloop.tools.shell import BashTool, CLIResult, ShellSession
from agentloop.tools.terminate import TerminateTool

__all__ = [
    "FunctionTool",
    "Tool",
    "ToolProvider",
    "ToolRegistry",
    "ToolResult",
    "tool",
    "BashTool",
    "CLIResult",
    "ShellSession",
    "StrReplaceEditorTool",
    "TerminateTool",
]
