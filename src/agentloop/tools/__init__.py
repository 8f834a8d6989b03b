"""agentloop tool interfaces, registry and batch meta-tool."""

from agentloop.tools.base import (
    BaseTool,
    PermissionDeniedError,
    ToolCall,
    ToolContext,
    ToolInfo,
    ToolResponse,
)
from agentloop.tools.batch import BATCH_TOOL_NAME, BatchTool
from agentloop.tools.registry import ToolRegistry

__all__ = [
    "BATCH_TOOL_NAME",
    "BaseTool",
    "BatchTool",
    "PermissionDeniedError",
    "ToolCall",
    "ToolContext",
    "ToolInfo",
    "ToolRegistry",
    "ToolResponse",
]
