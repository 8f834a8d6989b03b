"""
agentloop: a session-oriented agent execution engine for LLM tool use.

Primary entry point::

    from agentloop import Agent, LiteLLMProvider, SessionStore, StoreConfig, ToolRegistry

    store = SessionStore(StoreConfig(db_path="./sessions.db"))
    await store.initialize()
    agent = Agent(store, LiteLLMProvider("anthropic/claude-sonnet-4-5"), ToolRegistry())

    session = await store.create_session()
    run = await agent.run(session.id, "Hello!")
    event = await run.wait()
    print(event.message.content())
"""

from agentloop.agent import Agent, AgentEvent, AgentRun, CancelScope, PauseGate
from agentloop.compaction import CompactionEngine
from agentloop.errors import (
    AgentBusyError,
    AgentLoopError,
    AgentRunError,
    CompactionError,
    ConfigError,
    RequestCancelledError,
    SessionBusyError,
)
from agentloop.events import AgentLoopEvent, EventBus
from agentloop.ids import make_id
from agentloop.models import (
    AgentLoopConfig,
    AgentModelConfig,
    Attachment,
    BinaryPart,
    CompactionConfig,
    CompactionResult,
    ContentPart,
    ContextUsage,
    FinishPart,
    FinishReason,
    Message,
    ModelInfo,
    ReasoningPart,
    Session,
    StoreConfig,
    TextPart,
    TitleConfig,
    TokenUsage,
    ToolCallPart,
    ToolResultPart,
)
from agentloop.providers import LiteLLMProvider, Provider, ProviderError, ProviderResponse
from agentloop.store import (
    MessageNotFoundError,
    SessionNotFoundError,
    SessionStore,
    StoreError,
    StorePool,
)
from agentloop.tools import (
    BaseTool,
    BatchTool,
    PermissionDeniedError,
    ToolCall,
    ToolContext,
    ToolInfo,
    ToolRegistry,
    ToolResponse,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "Agent",
    "AgentEvent",
    "AgentRun",
    "CancelScope",
    "PauseGate",
    "CompactionEngine",
    "make_id",
    # Config
    "AgentLoopConfig",
    "AgentModelConfig",
    "CompactionConfig",
    "StoreConfig",
    "TitleConfig",
    "ModelInfo",
    # Models
    "Attachment",
    "BinaryPart",
    "CompactionResult",
    "ContentPart",
    "ContextUsage",
    "FinishPart",
    "FinishReason",
    "Message",
    "ReasoningPart",
    "Session",
    "TextPart",
    "TokenUsage",
    "ToolCallPart",
    "ToolResultPart",
    # Providers
    "LiteLLMProvider",
    "Provider",
    "ProviderResponse",
    # Store
    "SessionStore",
    "StorePool",
    # Tools
    "BaseTool",
    "BatchTool",
    "ToolCall",
    "ToolContext",
    "ToolInfo",
    "ToolRegistry",
    "ToolResponse",
    # Events
    "AgentLoopEvent",
    "EventBus",
    # Errors
    "AgentLoopError",
    "AgentBusyError",
    "AgentRunError",
    "CompactionError",
    "ConfigError",
    "MessageNotFoundError",
    "PermissionDeniedError",
    "ProviderError",
    "RequestCancelledError",
    "SessionBusyError",
    "SessionNotFoundError",
    "StoreError",
]
