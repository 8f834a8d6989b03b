"""In-process pub/sub event bus for agent, session and store lifecycle events."""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["AgentLoopEvent", dict[str, Any]], None | Awaitable[None]]


class AgentLoopEvent(StrEnum):
    """All event types published by agentloop components.

    Typed payload definitions for each event live in
    :mod:`agentloop.events.payloads`.

    The bus is the side channel for conditions that are operationally
    interesting but must never fail the primary turn: a failed compaction
    or title generation is published here and logged, and the run goes on.

    **Payload schemas by event:**

    ``SESSION_CREATED``, ``SESSION_UPDATED``, ``SESSION_DELETED``
        :class:`~agentloop.events.payloads.SessionPayload` —
        ``session_id: str``, ``title: str``

    ``MESSAGE_CREATED``, ``MESSAGE_UPDATED``, ``MESSAGE_DELETED``
        :class:`~agentloop.events.payloads.MessagePayload` —
        ``session_id: str``, ``message_id: str``, ``role: str``

    ``RUN_STARTED``, ``RUN_COMPLETED``, ``RUN_CANCELLED``, ``RUN_FAILED``
        :class:`~agentloop.events.payloads.RunPayload` —
        ``session_id: str`` plus ``error: str`` on failure.

    ``COMPACTION_TRIGGERED``
        :class:`~agentloop.events.payloads.CompactionTriggeredPayload` —
        ``session_id: str``, ``percent: float``

    ``COMPACTION_COMPLETED``
        :class:`~agentloop.events.payloads.CompactionCompletedPayload` —
        all fields from :class:`~agentloop.models.message.CompactionResult`
        serialized via ``model_dump()``.

    ``COMPACTION_FAILED``, ``TITLE_FAILED``
        :class:`~agentloop.events.payloads.FailurePayload` —
        ``session_id: str``, ``error: str``

    ``TITLE_GENERATED``
        :class:`~agentloop.events.payloads.SessionPayload`.

    ``MODEL_UPDATED``
        :class:`~agentloop.events.payloads.ModelUpdatedPayload` —
        ``agent: str``, ``model: str``
    """

    # Session lifecycle
    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    SESSION_DELETED = "session.deleted"

    # Message lifecycle
    MESSAGE_CREATED = "message.created"
    MESSAGE_UPDATED = "message.updated"
    MESSAGE_DELETED = "message.deleted"

    # Run lifecycle
    RUN_STARTED = "run.started"
    RUN_COMPLETED = "run.completed"
    RUN_CANCELLED = "run.cancelled"
    RUN_FAILED = "run.failed"

    # Compaction lifecycle
    COMPACTION_TRIGGERED = "compaction.triggered"
    COMPACTION_COMPLETED = "compaction.completed"
    COMPACTION_FAILED = "compaction.failed"

    # Titles
    TITLE_GENERATED = "title.generated"
    TITLE_FAILED = "title.failed"

    # Configuration
    MODEL_UPDATED = "model.updated"


class EventBus:
    """
    Simple in-process pub/sub event bus.

    Design decisions:
    - Sync handlers are called inline within ``publish()``.
    - Async handlers are scheduled via ``asyncio.create_task()`` (fire-and-forget).
    - Handler exceptions are logged but never propagate to the publisher.
    - One bus is normally shared by the store and the agent so subscribers
      see the whole process.

    Example::

        bus = EventBus()

        def on_compaction(event, payload):
            print(f"Compacted {payload['compacted_message_count']} messages")

        bus.subscribe(AgentLoopEvent.COMPACTION_COMPLETED, on_compaction)
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[AgentLoopEvent, list[Handler]] = {}
        self._global_handlers: list[Handler] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = logger or structlog.get_logger("agentloop.events")

    def subscribe(self, event: AgentLoopEvent, handler: Handler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event: The event type to listen for.
            handler: Callable accepting ``(event, payload)``. May be sync or async.
        """
        self._handlers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register a handler for ALL event types."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event: AgentLoopEvent, handler: Handler) -> None:
        """Remove a previously registered handler. No-op if not found."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: AgentLoopEvent, payload: dict[str, Any]) -> None:
        """
        Publish an event to all registered handlers.

        Sync handlers are called immediately in registration order.
        Async handlers are scheduled as background tasks (non-blocking).
        Exceptions from any handler are logged and swallowed.

        Args:
            event: The event type to publish.
            payload: Event-specific data dictionary.
        """
        all_handlers = list(self._handlers.get(event, [])) + list(self._global_handlers)
        for handler in all_handlers:
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    self._schedule(event, handler, result)
            except Exception as exc:
                self._logger.error(
                    "event_handler_error",
                    event_type=str(event),
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )

    def _schedule(self, event: AgentLoopEvent, handler: Handler, coro: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running event loop: the async handler is dropped
            coro.close()
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(functools.partial(self._handler_done, event, handler))

    def _handler_done(
        self, event: AgentLoopEvent, handler: Handler, task: asyncio.Task[Any]
    ) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error(
                "event_handler_error",
                event_type=str(event),
                handler=getattr(handler, "__qualname__", repr(handler)),
                error=str(exc),
            )
