"""agentloop model provider interface and adapters."""

from agentloop.providers.base import (
    Complete,
    ContentDelta,
    Provider,
    ProviderError,
    ProviderErrorEvent,
    ProviderEvent,
    ProviderResponse,
    ThinkingDelta,
    ToolUseDelta,
    ToolUseStart,
    ToolUseStop,
)
from agentloop.providers.litellm_provider import LiteLLMProvider

__all__ = [
    "Complete",
    "ContentDelta",
    "LiteLLMProvider",
    "Provider",
    "ProviderError",
    "ProviderErrorEvent",
    "ProviderEvent",
    "ProviderResponse",
    "ThinkingDelta",
    "ToolUseDelta",
    "ToolUseStart",
    "ToolUseStop",
]
