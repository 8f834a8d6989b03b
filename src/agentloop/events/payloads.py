"""Typed payload definitions for each AgentLoopEvent.

Usage example::

    from agentloop.events.bus import AgentLoopEvent, EventBus
    from agentloop.events.payloads import FailurePayload

    def on_failure(event: AgentLoopEvent, payload: FailurePayload) -> None:
        print(f"{event}: {payload['session_id']} {payload['error']}")

    bus.subscribe(AgentLoopEvent.COMPACTION_FAILED, on_failure)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import NotRequired, TypedDict

# ── Session and message lifecycle ─────────────────────────────────────────────


class SessionPayload(TypedDict):
    """Payload for session created/updated/deleted and ``TITLE_GENERATED``."""

    session_id: str
    title: str


class MessagePayload(TypedDict):
    """Payload for message created/updated/deleted."""

    session_id: str
    message_id: str
    role: str
    """``"user"``, ``"assistant"``, ``"tool"`` or ``"system"``."""


# ── Runs ──────────────────────────────────────────────────────────────────────


class RunPayload(TypedDict):
    """Payload for ``RUN_STARTED``, ``RUN_COMPLETED``, ``RUN_CANCELLED``, ``RUN_FAILED``."""

    session_id: str
    message_id: NotRequired[str]
    """The final assistant message. Present on ``RUN_COMPLETED``."""
    error: NotRequired[str]
    """Present on ``RUN_FAILED``."""


# ── Compaction ────────────────────────────────────────────────────────────────


class CompactionTriggeredPayload(TypedDict):
    """Payload for :attr:`AgentLoopEvent.COMPACTION_TRIGGERED`."""

    session_id: str
    percent: float
    """Context-window utilisation that crossed the threshold, in percent."""


class CompactionCompletedPayload(TypedDict):
    """Payload for :attr:`AgentLoopEvent.COMPACTION_COMPLETED`.

    This is the ``model_dump()`` of a :class:`agentloop.models.message.CompactionResult`.
    """

    session_id: str
    summary: str
    summarized_at: int
    compacted_message_count: int
    had_prior_summary: bool
    usage: dict[str, int]
    elapsed_ms: float


# ── Failures reported on the side channel ─────────────────────────────────────


class FailurePayload(TypedDict):
    """Payload for ``COMPACTION_FAILED`` and ``TITLE_FAILED``."""

    session_id: str
    error: str


class ModelUpdatedPayload(TypedDict):
    """Payload for :attr:`AgentLoopEvent.MODEL_UPDATED`."""

    agent: str
    model: str
