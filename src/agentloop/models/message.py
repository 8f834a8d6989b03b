"""Core message and content-part data models for agentloop."""

from __future__ import annotations

import base64
import time
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, Field


def now_ms() -> int:
    """Current unix time in milliseconds."""
    return int(time.time() * 1000)


class FinishReason(StrEnum):
    """Terminal classification of why a model turn ended."""

    STOP = "stop"
    LENGTH = "length"
    TOOL_USE = "tool_use"
    CANCELED = "canceled"
    PERMISSION_DENIED = "permission_denied"
    ERROR = "error"
    UNKNOWN = "unknown"


# ── Part Models ────────────────────────────────────────────────────────────────


class TextPart(BaseModel):
    """Visible text produced by the model or typed by the user."""

    type: Literal["text"] = "text"
    text: str


class ReasoningPart(BaseModel):
    """Chain-of-thought reasoning text (e.g. Claude extended thinking, o1 reasoning)."""

    type: Literal["reasoning"] = "reasoning"
    text: str


class BinaryPart(BaseModel):
    """
    A file attachment carried inline with a user message.

    ``data`` is base64-encoded so the part survives JSON persistence unchanged.
    """

    type: Literal["binary"] = "binary"
    path: str = ""
    mime_type: str
    data: str

    @classmethod
    def from_bytes(cls, content: bytes, mime_type: str, path: str = "") -> BinaryPart:
        return cls(path=path, mime_type=mime_type, data=base64.b64encode(content).decode("ascii"))

    def raw(self) -> bytes:
        return base64.b64decode(self.data)

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


class ToolCallPart(BaseModel):
    """
    A model-requested tool invocation.

    ``input`` is the raw JSON argument text. It grows through input deltas
    while streaming and is only safe to parse once ``finished`` is True.
    """

    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    input: str = ""
    finished: bool = False


class ToolResultPart(BaseModel):
    """The outcome of one tool call, correlated by ``tool_call_id``."""

    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    name: str = ""
    content: str
    metadata: str = ""
    is_error: bool = False


class FinishPart(BaseModel):
    """Step marker recording why and when a message finished."""

    type: Literal["finish"] = "finish"
    reason: FinishReason
    time: int = Field(default_factory=now_ms)


# Discriminated on ``type``.
ContentPart = Annotated[
    TextPart | ReasoningPart | BinaryPart | ToolCallPart | ToolResultPart | FinishPart,
    Field(discriminator="type"),
]

MessageRole = Literal["system", "user", "assistant", "tool"]


# ── Token Usage ────────────────────────────────────────────────────────────────


class TokenUsage(BaseModel):
    """Token counts reported by a provider for one call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def total(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
        )


# ── Attachments ────────────────────────────────────────────────────────────────


class Attachment(BaseModel):
    """A file the caller wants to send alongside the user's text."""

    file_path: str
    mime_type: str
    content: bytes

    def to_part(self) -> BinaryPart:
        return BinaryPart.from_bytes(self.content, self.mime_type, path=self.file_path)


# ── Message Model ──────────────────────────────────────────────────────────────


class Message(BaseModel):
    """
    A single conversation message and its ordered content parts.

    Assistant messages are mutated in place while a turn streams (text and
    reasoning appended, tool calls registered and finalized) and persisted
    after every mutation. Once a :class:`FinishPart` is present the message
    is terminal and is no longer modified by the turn that produced it.

    Synthetic messages (the summary turn injected ahead of history, compaction
    prompts) are never persisted and carry an empty ``id``.
    """

    id: str = ""
    """Monotonic ULID-based ID, e.g. ``msg_01JXYZ6K3MNPQR4STUVWXYZ01``. Defines replay order."""
    session_id: str = ""
    role: MessageRole
    parts: list[ContentPart] = Field(default_factory=list)
    model: str | None = None
    created_at: int = 0
    """Unix millisecond timestamp, strictly increasing within a session."""
    updated_at: int = 0
    finished_at: int | None = None

    # ── Accessors ──────────────────────────────────────────────────────────────

    def content(self) -> str:
        """Concatenate text from all TextPart objects in this message."""
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    def reasoning(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, ReasoningPart))

    def binary_content(self) -> list[BinaryPart]:
        return [part for part in self.parts if isinstance(part, BinaryPart)]

    def tool_calls(self) -> list[ToolCallPart]:
        return [part for part in self.parts if isinstance(part, ToolCallPart)]

    def tool_results(self) -> list[ToolResultPart]:
        return [part for part in self.parts if isinstance(part, ToolResultPart)]

    @property
    def finish_part(self) -> FinishPart | None:
        for part in self.parts:
            if isinstance(part, FinishPart):
                return part
        return None

    @property
    def finish_reason(self) -> FinishReason | None:
        part = self.finish_part
        return part.reason if part is not None else None

    @property
    def is_finished(self) -> bool:
        return self.finish_part is not None

    # ── Streaming mutators ─────────────────────────────────────────────────────

    def append_content(self, delta: str) -> None:
        for part in self.parts:
            if isinstance(part, TextPart):
                part.text += delta
                return
        self.parts.append(TextPart(text=delta))

    def append_reasoning(self, delta: str) -> None:
        for part in self.parts:
            if isinstance(part, ReasoningPart):
                part.text += delta
                return
        self.parts.append(ReasoningPart(text=delta))

    def add_tool_call(self, call: ToolCallPart) -> None:
        """Register a tool call, replacing any earlier part with the same id."""
        for index, part in enumerate(self.parts):
            if isinstance(part, ToolCallPart) and part.id == call.id:
                self.parts[index] = call
                return
        self.parts.append(call)

    def append_tool_call_input(self, call_id: str, delta: str) -> None:
        for part in self.parts:
            if isinstance(part, ToolCallPart) and part.id == call_id:
                part.input += delta
                return

    def finish_tool_call(self, call_id: str) -> None:
        for part in self.parts:
            if isinstance(part, ToolCallPart) and part.id == call_id:
                part.finished = True
                return

    def finish_all_tool_calls(self) -> int:
        """Finalize every still-open tool call with whatever input accumulated."""
        count = 0
        for part in self.parts:
            if isinstance(part, ToolCallPart) and not part.finished:
                part.finished = True
                count += 1
        return count

    def set_tool_calls(self, calls: list[ToolCallPart]) -> None:
        """Replace all tool call parts with the provider's final list."""
        self.parts = [part for part in self.parts if not isinstance(part, ToolCallPart)]
        for call in calls:
            self.parts.append(call.model_copy(update={"finished": True}))

    def add_finish(self, reason: FinishReason) -> None:
        self.parts = [part for part in self.parts if not isinstance(part, FinishPart)]
        self.parts.append(FinishPart(reason=reason))


# ── Result Types ───────────────────────────────────────────────────────────────


class ContextUsage(BaseModel):
    """Context-window utilisation of a session as seen before a streamed turn."""

    tokens: int
    context_window: int
    max_tokens: int
    percent: float
    """Utilisation in percent of the context window (0-100+)."""
    needs_compaction: bool


class CompactionResult(BaseModel):
    """The outcome of a successful compaction run."""

    session_id: str
    summary: str
    summarized_at: int
    compacted_message_count: int
    had_prior_summary: bool
    usage: TokenUsage
    elapsed_ms: float
