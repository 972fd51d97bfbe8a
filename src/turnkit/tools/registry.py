"""Tool registry for managing built-in and custom tools."""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from turnkit.logging import get_logger
from turnkit.tools.base import Tool

logger = get_logger("tools.registry")


@runtime_checkable
class ToolRegistrar(Protocol):
    """Supplies the ``{name: Tool}`` set available to one agent loop."""

    def tools(self) -> dict[str, Tool]: ...


class ToolRegistry:
    """Registry for built-in and custom tools."""

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for t in tools or []:
            self.register(t)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.debug("Overriding tool: %s", tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def tools(self) -> dict[str, Tool]:
        return dict(self._tools)

    def get_definitions(self) -> list[dict[str, Any]]:
        """Provider-neutral ``{name, description, parameters}`` definitions."""
        return [t.definition() for t in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
