"""Agent orchestrator: per-session runs, cancellation, compaction and model switching."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any

import structlog
from jinja2 import Template

from agentloop.agent.concurrency import (
    ActiveRequests,
    CancelScope,
    PauseGate,
    uncancel_current_task,
)
from agentloop.agent.streaming import TurnStreamer
from agentloop.agent.tool_executor import ToolExecutor
from agentloop.compaction.engine import CompactionEngine
from agentloop.errors import (
    AgentBusyError,
    AgentLoopError,
    AgentRunError,
    ConfigError,
    RequestCancelledError,
    SessionBusyError,
)
from agentloop.events.bus import AgentLoopEvent, EventBus
from agentloop.models.config import AgentLoopConfig, ModelInfo
from agentloop.models.message import (
    Attachment,
    CompactionResult,
    ContentPart,
    FinishReason,
    Message,
    TextPart,
    TokenUsage,
)
from agentloop.models.session import Session
from agentloop.providers.base import Provider
from agentloop.providers.litellm_provider import LiteLLMProvider
from agentloop.store.sqlite import SessionStore, StoreError
from agentloop.tools.registry import ToolRegistry

ProviderFactory = Callable[[str, ModelInfo, int | None], Provider]


def default_provider_factory(agent_name: str, model: ModelInfo, max_tokens: int | None) -> Provider:
    """Build a :class:`LiteLLMProvider` for *model*."""
    return LiteLLMProvider(model, max_tokens=max_tokens)


@dataclass
class AgentEvent:
    """The single terminal outcome of a run: a message or an error."""

    message: Message | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, RequestCancelledError)


class AgentRun:
    """
    Handle to one in-flight run.

    Iterating yields exactly one :class:`AgentEvent` and then stops::

        run = await agent.run(session.id, "hello")
        async for event in run:
            print(event.message.content() if event.ok else event.error)

    ``await run.wait()`` returns the same event. Cancelling the coroutine
    that waits does not cancel the run; use :meth:`Agent.cancel` for that.
    """

    def __init__(self, session_id: str, task: asyncio.Task[AgentEvent], scope: CancelScope) -> None:
        self.session_id = session_id
        self._task = task
        self._scope = scope

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> AgentEvent:
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._task.cancelled() and self._scope.cancelled:
                return AgentEvent(error=RequestCancelledError(self.session_id))
            raise

    async def __aiter__(self) -> AsyncIterator[AgentEvent]:
        yield await self.wait()


class Agent:
    """
    Drives model turns and tool calls for many sessions.

    One instance is constructed per process; the busy registry and pause gate
    are fields of that instance. Each :meth:`run` is an independent asyncio
    task. At most one ordinary run exists per session: a second attempt is
    rejected with :class:`SessionBusyError`, never queued.

    Example::

        agent = Agent(store, LiteLLMProvider("anthropic/claude-sonnet-4-5"), registry)
        run = await agent.run(session.id, "Summarise README.md")
        event = await run.wait()
    """

    def __init__(
        self,
        store: SessionStore,
        provider: Provider,
        tools: ToolRegistry | None = None,
        config: AgentLoopConfig | None = None,
        *,
        title_provider: Provider | None = None,
        event_bus: EventBus | None = None,
        provider_factory: ProviderFactory | None = None,
        agent_name: str = "primary",
    ) -> None:
        self._store = store
        self._provider = provider
        self._tools = tools if tools is not None else ToolRegistry()
        self._config = config or AgentLoopConfig.default()
        self._title_provider = title_provider
        self._event_bus = event_bus
        self._provider_factory = provider_factory or default_provider_factory
        self._agent_name = agent_name

        self._active = ActiveRequests()
        self._gate = PauseGate()
        self._runs: dict[asyncio.Task[AgentEvent], CancelScope] = {}
        self._background: set[asyncio.Task[None]] = set()

        self._streamer = TurnStreamer(store, self._gate, self.track_usage)
        self._executor = ToolExecutor(self._tools)
        self._compaction = CompactionEngine(
            store, self._config.compaction, self.track_usage, event_bus
        )
        self._logger = structlog.get_logger("agentloop.agent")

    # ── Properties ─────────────────────────────────────────────────────────────

    @property
    def provider(self) -> Provider:
        return self._provider

    @property
    def title_provider(self) -> Provider | None:
        return self._title_provider

    @property
    def config(self) -> AgentLoopConfig:
        return self._config

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    # ── Busy state ─────────────────────────────────────────────────────────────

    def is_busy(self) -> bool:
        """True while any run or compaction is in flight."""
        return self._active.any_active()

    def is_session_busy(self, session_id: str) -> bool:
        return self._active.is_active(session_id)

    def cancel(self, session_id: str) -> None:
        """
        Cancel the session's run. Idempotent; a no-op for idle sessions.

        The run deregisters itself once it has persisted its cancelled state.
        """
        scope = self._active.get(session_id)
        if scope is not None and scope.cancel():
            self._logger.info("run_cancel_requested", session_id=session_id)

    def paused(self) -> AbstractAsyncContextManager[None]:
        """
        Hold every running turn between two stream events for the block's duration.

        Usage::

            async with agent.paused():
                await ask_user_for_permission()
        """
        return self._gate.paused()

    # ── Run ────────────────────────────────────────────────────────────────────

    async def run(
        self,
        session_id: str,
        content: str,
        attachments: list[Attachment] | None = None,
    ) -> AgentRun:
        """
        Start a run on *session_id* and return its handle.

        Attachments are dropped when the model does not support them.

        Raises:
            SessionBusyError: The session already has a run in flight.
        """
        scope = CancelScope()
        if not self._active.try_acquire(session_id, scope):
            raise SessionBusyError(session_id)

        if attachments and not self._provider.model().supports_attachments:
            self._logger.debug(
                "attachments_dropped", session_id=session_id, count=len(attachments)
            )
            attachments = None

        task = asyncio.create_task(
            self._execute(scope, session_id, content, list(attachments or [])),
            name=f"agentloop-run-{session_id}",
        )
        scope.bind(task)
        self._runs[task] = scope
        task.add_done_callback(self._forget_run)
        return AgentRun(session_id, task, scope)

    async def _execute(
        self,
        scope: CancelScope,
        session_id: str,
        content: str,
        attachments: list[Attachment],
    ) -> AgentEvent:
        log = self._logger.bind(session_id=session_id)
        log.info("run_started")
        self._publish(AgentLoopEvent.RUN_STARTED, {"session_id": session_id})
        try:
            message = await self._process_generation(scope, session_id, content, attachments)
            event = AgentEvent(message=message)
        except asyncio.CancelledError:
            if not scope.cancelled:
                raise
            uncancel_current_task()
            event = AgentEvent(error=RequestCancelledError(session_id))
        except RequestCancelledError as exc:
            event = AgentEvent(error=exc)
        except AgentLoopError as exc:
            log.error("run_failed", error=str(exc), error_type=type(exc).__name__)
            event = AgentEvent(error=exc)
        except Exception as exc:
            log.exception("run_crashed")
            error = AgentRunError(f"agent run failed: {exc}")
            error.__cause__ = exc
            event = AgentEvent(error=error)
        finally:
            self._active.release(session_id, scope)

        if event.ok:
            assert event.message is not None
            log.info("run_completed", message_id=event.message.id)
            self._publish(
                AgentLoopEvent.RUN_COMPLETED,
                {"session_id": session_id, "message_id": event.message.id},
            )
        elif event.cancelled:
            log.info("run_cancelled")
            self._publish(AgentLoopEvent.RUN_CANCELLED, {"session_id": session_id})
        else:
            self._publish(
                AgentLoopEvent.RUN_FAILED, {"session_id": session_id, "error": str(event.error)}
            )
        return event

    async def _process_generation(
        self,
        scope: CancelScope,
        session_id: str,
        content: str,
        attachments: list[Attachment],
    ) -> Message:
        session, history = await self._prepare_history(session_id)
        if not history and not session.has_summary:
            self._trigger_title_generation(session_id, content)

        parts: list[ContentPart] = [TextPart(text=content)]
        parts.extend(attachment.to_part() for attachment in attachments)
        user_message = await self._store.create_message(session_id, "user", parts)
        history.append(user_message)

        tools = self._tools.infos()
        while True:
            if scope.cancelled:
                raise RequestCancelledError(session_id)

            history = await self._compact_if_needed(session_id, history, user_message)

            message = await self._streamer.stream(
                scope, session_id, self._provider, history, tools
            )
            if message.finish_reason != FinishReason.TOOL_USE or not message.tool_calls():
                return message

            outcome = await self._executor.execute(scope, session_id, message)
            try:
                tool_message = await asyncio.shield(
                    self._store.create_message(session_id, "tool", list(outcome.results))
                )
            except asyncio.CancelledError:
                if not scope.cancelled:
                    raise
                # The shielded write still lands; only the turn is over.
                uncancel_current_task()
                outcome.cancelled = True
            if outcome.cancelled:
                message.add_finish(FinishReason.CANCELED)
                await self._streamer.persist_detached(message)
                raise RequestCancelledError(session_id)
            if outcome.permission_denied:
                await self._store.update_message(message)
                return message

            history.extend([message, tool_message])

    async def _prepare_history(self, session_id: str) -> tuple[Session, list[Message]]:
        """The session and its model-facing history: summary turn, then newer messages."""
        session = await self._store.get_session(session_id)
        if not session.has_summary:
            return session, await self._store.list_messages(session_id)

        messages = await self._store.list_messages_after(session_id, session.summarized_at or 0)
        summary = Message(
            session_id=session_id,
            role="assistant",
            parts=[TextPart(text=session.summary or "")],
        )
        return session, [summary, *messages]

    async def _compact_if_needed(
        self, session_id: str, history: list[Message], user_message: Message
    ) -> list[Message]:
        if not self._config.compaction.auto:
            return history

        log = self._logger.bind(session_id=session_id)
        try:
            session = await self._store.get_session(session_id)
        except StoreError as exc:
            log.warning("context_estimate_failed", error=str(exc))
            return history
        usage = self._compaction.estimate_usage(
            session, self._provider.model(), self._provider.max_tokens()
        )
        if not usage.needs_compaction:
            return history

        log.info("compaction_triggered", percent=round(usage.percent, 2), tokens=usage.tokens)
        self._publish(
            AgentLoopEvent.COMPACTION_TRIGGERED,
            {"session_id": session_id, "percent": usage.percent},
        )
        try:
            async with asyncio.timeout(self._config.compaction.timeout_secs):
                result = await self.compact_session(session_id, force=True)
        except TimeoutError:
            log.warning("compaction_timed_out", timeout_secs=self._config.compaction.timeout_secs)
            self._publish(
                AgentLoopEvent.COMPACTION_FAILED,
                {"session_id": session_id, "error": "compaction timed out"},
            )
            return history
        except Exception as exc:
            # Already reported by the engine; the turn goes on with the full history.
            log.warning("compaction_failed_continuing", error=str(exc))
            return history

        if result is None:
            return history

        _, compacted = await self._prepare_history(session_id)
        if not compacted or compacted[-1].id != user_message.id:
            compacted.append(user_message)
        return compacted

    # ── Compaction ─────────────────────────────────────────────────────────────

    async def compact_session(self, session_id: str, force: bool = False) -> CompactionResult | None:
        """
        Summarise the session's history now.

        ``force`` bypasses the busy check and is only used from inside a run,
        which already owns the session.

        Returns:
            The compaction result, or ``None`` when there was nothing new to summarise.

        Raises:
            SessionBusyError: The session (or a compaction of it) is in flight and
                ``force`` is False.
            CompactionError: The summary could not be produced.
        """
        key = ActiveRequests.compaction_key(session_id)
        if not force and self._active.is_active(session_id):
            raise SessionBusyError(session_id)

        if force:
            scope = CancelScope()
        else:
            scope = CancelScope(asyncio.current_task())
        if not self._active.try_acquire(key, scope):
            raise SessionBusyError(session_id)
        try:
            return await self._compaction.compact(session_id, self._provider, self._tools.infos())
        finally:
            self._active.release(key, scope)

    # ── Usage ──────────────────────────────────────────────────────────────────

    async def get_usage(self, session_id: str) -> int:
        """Cumulative prompt plus completion tokens of the session."""
        session = await self._store.get_session(session_id)
        return session.total_tokens

    async def estimate_context_window_usage(self, session_id: str) -> tuple[float, bool]:
        """Return ``(percent_of_window_used, needs_compaction)`` for the next turn."""
        session = await self._store.get_session(session_id)
        usage = self._compaction.estimate_usage(
            session, self._provider.model(), self._provider.max_tokens()
        )
        return usage.percent, usage.needs_compaction

    async def track_usage(self, session_id: str, model: ModelInfo, usage: TokenUsage) -> None:
        """Add one call's tokens and cost to the session counters."""
        cost = (
            model.cost_per_1m_in_cached / 1e6 * usage.cache_creation_tokens
            + model.cost_per_1m_out_cached / 1e6 * usage.cache_read_tokens
            + model.cost_per_1m_in / 1e6 * usage.input_tokens
            + model.cost_per_1m_out / 1e6 * usage.output_tokens
        )
        await self._store.record_usage(
            session_id,
            prompt_tokens=usage.input_tokens + usage.cache_creation_tokens,
            completion_tokens=usage.output_tokens + usage.cache_read_tokens,
            context_tokens=usage.total,
            cost=cost,
        )

    # ── Titles ─────────────────────────────────────────────────────────────────

    def _trigger_title_generation(self, session_id: str, content: str) -> None:
        if self._title_provider is None or not self._config.title.enabled or not content:
            return
        task = asyncio.create_task(
            self._generate_title(session_id, content), name=f"agentloop-title-{session_id}"
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _generate_title(self, session_id: str, content: str) -> None:
        assert self._title_provider is not None
        log = self._logger.bind(session_id=session_id)
        try:
            prompt = Template(self._config.title.prompt_template).render(content=content)
            response = await self._title_provider.send_messages(
                [Message(session_id=session_id, role="user", parts=[TextPart(text=prompt)])], []
            )
            title = response.content.replace("\n", " ").strip()[: self._config.title.max_length]
            if not title:
                return
            await self._store.rename_session(session_id, title)
        except Exception as exc:
            log.warning("title_generation_failed", error=str(exc))
            self._publish(AgentLoopEvent.TITLE_FAILED, {"session_id": session_id, "error": str(exc)})
            return
        log.debug("title_generated", title=title)
        self._publish(AgentLoopEvent.TITLE_GENERATED, {"session_id": session_id, "title": title})

    # ── Models ─────────────────────────────────────────────────────────────────

    def update_model(self, agent_name: str, model_id: str) -> ModelInfo:
        """
        Switch *agent_name* (``"primary"`` or ``"title"``) to *model_id*.

        Raises:
            AgentBusyError: Any run or compaction is in flight.
            ConfigError: Unknown agent name, or the provider could not be built.
        """
        if self.is_busy():
            raise AgentBusyError()

        try:
            config = self._config.with_agent_model(agent_name, model_id)
        except KeyError as exc:
            raise ConfigError(f"unknown agent: {agent_name!r}") from exc

        model = config.resolve_model(model_id)
        try:
            provider = self._provider_factory(agent_name, model, config.agents[agent_name].max_tokens)
        except Exception as exc:
            raise ConfigError(f"failed to create provider for model {model_id}: {exc}") from exc

        self._config = config
        if agent_name == self._agent_name:
            self._provider = provider
        elif agent_name == "title":
            self._title_provider = provider

        self._logger.info("model_updated", agent=agent_name, model=model_id)
        self._publish(AgentLoopEvent.MODEL_UPDATED, {"agent": agent_name, "model": model_id})
        return provider.model()

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Cancel in-flight runs and wait for them and for background title tasks."""
        for scope in list(self._runs.values()):
            scope.cancel()
        pending: list[asyncio.Task[Any]] = [*self._runs, *self._background]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _forget_run(self, task: asyncio.Task[AgentEvent]) -> None:
        self._runs.pop(task, None)

    def _publish(self, event: AgentLoopEvent, payload: dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event, payload)
