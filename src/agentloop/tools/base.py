"""
Base classes for tools.

A tool is a named capability the model may invoke. It exposes a description
and a JSON-schema for its parameters through :meth:`BaseTool.info` and runs
one call at a time through :meth:`BaseTool.run`.

Tool-scoped failures are reported as ``ToolResponse.error(...)``. Raising is
reserved for conditions the agent must react to:
:class:`PermissionDeniedError` stops the rest of the batch, and any other
exception is converted into an error result for that call only.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from agentloop.errors import AgentLoopError


class PermissionDeniedError(AgentLoopError):
    """Raised by a tool when the user refused the action it needs to perform."""

    def __init__(self, message: str = "permission denied") -> None:
        super().__init__(message)


class ToolInfo(BaseModel):
    """Description of a tool as presented to the model."""

    name: str
    description: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    """JSON-schema ``properties`` mapping."""
    required: list[str] = Field(default_factory=list)

    def to_schema(self) -> dict[str, Any]:
        """Full JSON-schema object for the tool's input."""
        return {
            "type": "object",
            "properties": self.parameters,
            "required": self.required,
        }


class ToolCall(BaseModel):
    """One invocation request: the call id, tool name and raw JSON input."""

    id: str
    name: str
    input: str = ""


class ToolResponse(BaseModel):
    """What a tool returns for one call."""

    content: str
    metadata: str = ""
    """Free-form (usually JSON) side data, e.g. a diff for the UI."""
    is_error: bool = False

    @classmethod
    def text(cls, content: str, metadata: str = "") -> ToolResponse:
        return cls(content=content, metadata=metadata)

    @classmethod
    def error(cls, content: str, metadata: str = "") -> ToolResponse:
        return cls(content=content, metadata=metadata, is_error=True)


class ToolContext(BaseModel):
    """Identifies the session and assistant message a call belongs to."""

    session_id: str
    message_id: str


class BaseTool(ABC):
    """Base class for all tools."""

    @abstractmethod
    def info(self) -> ToolInfo:
        """Return the tool's name, description and parameter schema."""

    @abstractmethod
    async def run(self, call: ToolCall, context: ToolContext) -> ToolResponse:
        """
        Execute one call.

        Raises:
            PermissionDeniedError: The user refused the action.
        """

    @property
    def name(self) -> str:
        return self.info().name
