"""agentloop event bus."""

from agentloop.events.bus import AgentLoopEvent, EventBus, Handler
from agentloop.events.payloads import (
    CompactionCompletedPayload,
    CompactionTriggeredPayload,
    FailurePayload,
    MessagePayload,
    ModelUpdatedPayload,
    RunPayload,
    SessionPayload,
)

__all__ = [
    "AgentLoopEvent",
    "CompactionCompletedPayload",
    "CompactionTriggeredPayload",
    "EventBus",
    "FailurePayload",
    "Handler",
    "MessagePayload",
    "ModelUpdatedPayload",
    "RunPayload",
    "SessionPayload",
]
