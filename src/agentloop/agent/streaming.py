"""Drives one streamed model turn into a persisted assistant message."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import aclosing

import structlog

from agentloop.agent.concurrency import CancelScope, PauseGate, uncancel_current_task
from agentloop.agent.tool_executor import canceled_result
from agentloop.errors import RequestCancelledError
from agentloop.models.config import ModelInfo
from agentloop.models.message import FinishReason, Message, TokenUsage
from agentloop.providers.base import (
    Complete,
    ContentDelta,
    Provider,
    ProviderError,
    ProviderErrorEvent,
    ProviderEvent,
    ThinkingDelta,
    ToolUseDelta,
    ToolUseStart,
    ToolUseStop,
)
from agentloop.store.sqlite import SessionStore
from agentloop.tools.base import ToolInfo

UsageTracker = Callable[[str, ModelInfo, TokenUsage], Awaitable[None]]


class _StreamCancelled(Exception):
    """The provider reported that the stream ended because the request was cancelled."""


class TurnStreamer:
    """
    Applies provider events, in arrival order, to one assistant message.

    Every event mutates the in-progress message and persists it before the
    next event is read. Each event is processed as one step of the
    :class:`PauseGate`, so a pause holds the turn between events.

    On cancellation the message is finished as ``canceled`` through a
    shielded write (the run's own scope is already done) and
    :class:`RequestCancelledError` is raised.
    """

    def __init__(self, store: SessionStore, gate: PauseGate, track_usage: UsageTracker) -> None:
        self._store = store
        self._gate = gate
        self._track_usage = track_usage
        self._logger = structlog.get_logger("agentloop.agent.stream")

    async def stream(
        self,
        scope: CancelScope,
        session_id: str,
        provider: Provider,
        history: list[Message],
        tools: list[ToolInfo],
    ) -> Message:
        """
        Stream one turn and return the finished assistant message.

        Raises:
            RequestCancelledError: The run was cancelled mid-turn.
            ProviderError: The provider reported a non-cancellation error.
        """
        model = provider.model()
        message = await self._store.create_message(session_id, "assistant", [], model=model.id)
        log = self._logger.bind(session_id=session_id, message_id=message.id)

        try:
            await self._consume(scope, session_id, provider, model, message, history, tools)
        except asyncio.CancelledError:
            if not scope.cancelled:
                raise
            uncancel_current_task()
        except _StreamCancelled:
            pass
        except ProviderError:
            message.add_finish(FinishReason.ERROR)
            await self.persist_detached(message)
            await self._close_tool_calls(session_id, message)
            raise
        else:
            if not scope.cancelled:
                return message

        log.info("turn_cancelled")
        message.add_finish(FinishReason.CANCELED)
        await self.persist_detached(message)
        await self._close_tool_calls(session_id, message)
        raise RequestCancelledError(session_id)

    async def persist_detached(self, message: Message) -> None:
        """Write *message* even if the surrounding task is being cancelled."""
        await asyncio.shield(self._store.update_message(message))

    async def _close_tool_calls(self, session_id: str, message: Message) -> None:
        # A turn that ended early still answers every call it started.
        calls = message.tool_calls()
        if not calls:
            return
        await asyncio.shield(
            self._store.create_message(
                session_id, "tool", [canceled_result(call) for call in calls]
            )
        )

    async def _consume(
        self,
        scope: CancelScope,
        session_id: str,
        provider: Provider,
        model: ModelInfo,
        message: Message,
        history: list[Message],
        tools: list[ToolInfo],
    ) -> None:
        async with aclosing(provider.stream_response(history, tools)) as events:
            async for event in events:
                async with self._gate.step():
                    await self._apply(session_id, model, message, event)
                if scope.cancelled:
                    return

        if scope.cancelled:
            return

        # A stream that ends without a completion finalizes what it produced.
        if message.is_finished:
            return
        message.finish_all_tool_calls()
        message.add_finish(FinishReason.TOOL_USE if message.tool_calls() else FinishReason.UNKNOWN)
        await self._store.update_message(message)

    async def _apply(
        self, session_id: str, model: ModelInfo, message: Message, event: ProviderEvent
    ) -> None:
        if isinstance(event, ThinkingDelta):
            message.append_reasoning(event.text)
        elif isinstance(event, ContentDelta):
            message.append_content(event.text)
        elif isinstance(event, ToolUseStart):
            message.add_tool_call(event.tool_call.model_copy(update={"finished": False}))
        elif isinstance(event, ToolUseDelta):
            message.append_tool_call_input(event.tool_call_id, event.input)
        elif isinstance(event, ToolUseStop):
            message.finish_tool_call(event.tool_call_id)
        elif isinstance(event, ProviderErrorEvent):
            if event.cancelled:
                raise _StreamCancelled()
            self._logger.error("provider_error", session_id=session_id, error=event.message)
            raise ProviderError(event.message, model=model.id)
        elif isinstance(event, Complete):
            response = event.response
            if response.tool_calls:
                message.set_tool_calls(response.tool_calls)
            else:
                message.finish_all_tool_calls()
            message.add_finish(response.finish_reason)
            await self._store.update_message(message)
            await self._track_usage(session_id, model, response.usage)
            return
        await self._store.update_message(message)
