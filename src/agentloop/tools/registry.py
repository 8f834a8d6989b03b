"""Tool registry for managing available tools."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

import structlog

from agentloop.tools.base import BaseTool, ToolInfo

logger = structlog.get_logger("agentloop.tools")


class ToolRegistry:
    """Name-keyed collection of tools offered to the model."""

    def __init__(self, tools: Iterable[BaseTool] = ()) -> None:
        self._tools: dict[str, BaseTool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: BaseTool) -> None:
        """Register a tool, replacing any tool with the same name."""
        name = tool.info().name
        self._tools[name] = tool
        logger.debug("tool_registered", tool_name=name)

    def unregister(self, name: str) -> None:
        if self._tools.pop(name, None) is not None:
            logger.debug("tool_unregistered", tool_name=name)

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def infos(self) -> list[ToolInfo]:
        """Tool descriptions in registration order, as sent to the provider."""
        return [tool.info() for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[BaseTool]:
        return iter(list(self._tools.values()))

    def __len__(self) -> int:
        return len(self._tools)
