"""agentloop agent orchestrator and its concurrency controller."""

from agentloop.agent.concurrency import ActiveRequests, CancelScope, PauseGate
from agentloop.agent.orchestrator import (
    Agent,
    AgentEvent,
    AgentRun,
    ProviderFactory,
    default_provider_factory,
)
from agentloop.agent.streaming import TurnStreamer
from agentloop.agent.tool_executor import (
    CANCELED_TEXT,
    PERMISSION_DENIED_TEXT,
    ToolBatchOutcome,
    ToolExecutor,
)

__all__ = [
    "CANCELED_TEXT",
    "PERMISSION_DENIED_TEXT",
    "ActiveRequests",
    "Agent",
    "AgentEvent",
    "AgentRun",
    "CancelScope",
    "PauseGate",
    "ProviderFactory",
    "ToolBatchOutcome",
    "ToolExecutor",
    "TurnStreamer",
    "default_provider_factory",
]
