"""
Provider interface and the streaming event vocabulary.

A provider wraps one language model. The agent only ever talks to it
through this interface: a streamed turn yields an ordered sequence of
:data:`ProviderEvent` objects ending in exactly one :class:`Complete` or
:class:`ProviderErrorEvent`, and a one-shot call returns a
:class:`ProviderResponse`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Annotated, Literal

from pydantic import BaseModel, Field

from agentloop.errors import AgentLoopError
from agentloop.models.config import ModelInfo
from agentloop.models.message import FinishReason, Message, TokenUsage, ToolCallPart
from agentloop.tools.base import ToolInfo


class ProviderError(AgentLoopError):
    """Raised when a model call fails. Carries the model id for context."""

    def __init__(self, message: str, *, model: str = "") -> None:
        super().__init__(message)
        self.model = model


class ProviderResponse(BaseModel):
    """The final outcome of one model call."""

    content: str = ""
    tool_calls: list[ToolCallPart] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    finish_reason: FinishReason = FinishReason.STOP


# ── Stream Events ──────────────────────────────────────────────────────────────


class ThinkingDelta(BaseModel):
    type: Literal["thinking_delta"] = "thinking_delta"
    text: str


class ContentDelta(BaseModel):
    type: Literal["content_delta"] = "content_delta"
    text: str


class ToolUseStart(BaseModel):
    """A new tool call. ``tool_call.input`` may already hold a first fragment."""

    type: Literal["tool_use_start"] = "tool_use_start"
    tool_call: ToolCallPart


class ToolUseDelta(BaseModel):
    """A fragment of a tool call's JSON input."""

    type: Literal["tool_use_delta"] = "tool_use_delta"
    tool_call_id: str
    input: str


class ToolUseStop(BaseModel):
    type: Literal["tool_use_stop"] = "tool_use_stop"
    tool_call_id: str


class ProviderErrorEvent(BaseModel):
    """
    The stream failed.

    ``cancelled`` is True when the failure was caused by the caller
    cancelling the request; the agent treats that as a cancellation, not as
    a model error.
    """

    type: Literal["error"] = "error"
    message: str
    cancelled: bool = False


class Complete(BaseModel):
    type: Literal["complete"] = "complete"
    response: ProviderResponse


ProviderEvent = Annotated[
    ThinkingDelta | ContentDelta | ToolUseStart | ToolUseDelta | ToolUseStop
    | ProviderErrorEvent | Complete,
    Field(discriminator="type"),
]


# ── Provider ───────────────────────────────────────────────────────────────────


class Provider(ABC):
    """Base class for model providers."""

    @abstractmethod
    def model(self) -> ModelInfo:
        """Metadata of the wrapped model: context window, attachments, prices."""

    @abstractmethod
    def max_tokens(self) -> int:
        """Configured output token cap for one call."""

    @abstractmethod
    def stream_response(
        self, history: list[Message], tools: list[ToolInfo]
    ) -> AsyncIterator[ProviderEvent]:
        """
        Stream one model turn over *history*.

        Implementations are async generators. Task cancellation must be
        allowed to propagate out of the iterator.
        """

    @abstractmethod
    async def send_messages(
        self, history: list[Message], tools: list[ToolInfo]
    ) -> ProviderResponse:
        """
        Run one non-streaming call.

        Raises:
            ProviderError: If the model call fails.
        """
