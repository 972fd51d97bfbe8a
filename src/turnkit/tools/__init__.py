"""Tool contract, registry, and the built-in reference tools."""
from __future__ import annotations

from turnkit.runtime.process import ProcessRuntime
from turnkit.tools.base import FunctionTool, OutputCallback, Tool, ToolOutput, tool
from turnkit.tools.bash import BashTool
from turnkit.tools.read import ReadTool
from turnkit.tools.registry import ToolRegistrar, ToolRegistry

__all__ = [
    "BashTool",
    "FunctionTool",
    "OutputCallback",
    "ReadTool",
    "Tool",
    "ToolOutput",
    "ToolRegistrar",
    "ToolRegistry",
    "create_builtin_tools",
    "tool",
]


def create_builtin_tools(cwd: str | None = None, grace_period: float = 2.0) -> ToolRegistry:
    """
    Create a registry holding the built-in ``read`` and ``bash`` tools.

    ``grace_period`` is the SIGTERM-to-SIGKILL delay used by ``bash``.
    """
    return ToolRegistry([ReadTool(cwd), BashTool(cwd, ProcessRuntime(grace_period=grace_period))])
