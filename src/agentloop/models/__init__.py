"""agentloop data models."""

from agentloop.models.config import (
    AgentLoopConfig,
    AgentModelConfig,
    CompactionConfig,
    ModelInfo,
    StoreConfig,
    TitleConfig,
)
from agentloop.models.message import (
    Attachment,
    BinaryPart,
    CompactionResult,
    ContentPart,
    ContextUsage,
    FinishPart,
    FinishReason,
    Message,
    MessageRole,
    ReasoningPart,
    TextPart,
    TokenUsage,
    ToolCallPart,
    ToolResultPart,
)
from agentloop.models.session import Session

__all__ = [
    # Config
    "AgentLoopConfig",
    "AgentModelConfig",
    "CompactionConfig",
    "ModelInfo",
    "StoreConfig",
    "TitleConfig",
    # Content parts
    "TextPart",
    "ReasoningPart",
    "BinaryPart",
    "ToolCallPart",
    "ToolResultPart",
    "FinishPart",
    "ContentPart",
    # Message
    "Attachment",
    "FinishReason",
    "Message",
    "MessageRole",
    "TokenUsage",
    # Session
    "Session",
    # Results
    "ContextUsage",
    "CompactionResult",
]
