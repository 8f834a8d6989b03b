"""History compaction: trigger maths and the summarisation procedure.

A session whose history approaches the model's context window is compacted
by asking the model for a continuation-oriented summary of everything since
the previous summary. The summary is stored on the session together with a
``summarized_at`` boundary; from then on the model sees the summary as a
leading turn followed only by messages created after the boundary.

Trigger:

- utilisation ``context_tokens / context_window`` at or above
  ``threshold_fraction`` (default 90 %), or
- ``context_tokens + max_tokens`` would overflow the window.

A session that has not used any tokens yet is never compacted.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

import structlog

from agentloop.errors import CompactionError
from agentloop.events.bus import AgentLoopEvent, EventBus
from agentloop.models.config import CompactionConfig, ModelInfo
from agentloop.models.message import (
    CompactionResult,
    ContextUsage,
    Message,
    TextPart,
    TokenUsage,
)
from agentloop.models.session import Session
from agentloop.providers.base import Provider, ProviderError
from agentloop.store.sqlite import SessionStore
from agentloop.tools.base import ToolInfo

UsageTracker = Callable[[str, ModelInfo, TokenUsage], Awaitable[None]]


class CompactionEngine:
    """
    Summarises a session's history into a new history boundary.

    The engine does not take the busy slot itself; the agent registers the
    compaction before calling :meth:`compact`.

    Guarantees:

    - Compacting with no messages after the current boundary is a no-op.
    - The new ``summarized_at`` is the ``created_at`` of the last summarised
      message, so anything written while the summary call is in flight stays
      after the boundary.
    - Unfinished messages at the end of the history (a turn still streaming)
      are left for the next compaction.
    - Usage of the summary call is recorded exactly like a normal turn.
    - ``COMPACTION_COMPLETED`` or ``COMPACTION_FAILED`` is published.

    Example::

        engine = CompactionEngine(store, CompactionConfig(), agent.track_usage, bus)
        usage = engine.estimate_usage(session, provider.model(), provider.max_tokens())
        if usage.needs_compaction:
            await engine.compact(session.id, provider)
    """

    def __init__(
        self,
        store: SessionStore,
        config: CompactionConfig,
        track_usage: UsageTracker,
        event_bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._track_usage = track_usage
        self._event_bus = event_bus
        self._logger = structlog.get_logger("agentloop.compaction")

    # ── Threshold helpers ───────────────────────────────────────────────────────

    def context_window(self, model: ModelInfo) -> int:
        """The model's window, or the configured default when it reports none."""
        return model.context_window if model.context_window > 0 else self._config.default_context_window

    def estimate_usage(self, session: Session, model: ModelInfo, max_tokens: int) -> ContextUsage:
        """Return how full the window is and whether the next turn should compact first."""
        window = self.context_window(model)
        tokens = session.context_tokens
        ratio = tokens / window
        needs = tokens > 0 and (
            ratio >= self._config.threshold_fraction or tokens + max_tokens > window
        )
        return ContextUsage(
            tokens=tokens,
            context_window=window,
            max_tokens=max_tokens,
            percent=ratio * 100,
            needs_compaction=needs,
        )

    # ── Summarisation ──────────────────────────────────────────────────────────

    async def compact(
        self,
        session_id: str,
        provider: Provider,
        tools: list[ToolInfo] | None = None,
    ) -> CompactionResult | None:
        """
        Summarise everything after the current boundary.

        Returns:
            The result, or ``None`` when there was nothing new to summarise.

        Raises:
            CompactionError: The model call failed or produced an empty summary.
            StoreError: Reading or writing the session failed.
        """
        log = self._logger.bind(session_id=session_id)
        started = time.monotonic()
        try:
            result = await self._compact(session_id, provider, tools or [], started)
        except Exception as exc:
            log.error("compaction_failed", error=str(exc))
            self._publish(
                AgentLoopEvent.COMPACTION_FAILED, {"session_id": session_id, "error": str(exc)}
            )
            raise

        if result is None:
            log.debug("compaction_skipped", reason="nothing_to_summarize")
            return None

        log.info(
            "compaction_completed",
            compacted_message_count=result.compacted_message_count,
            had_prior_summary=result.had_prior_summary,
            elapsed_ms=result.elapsed_ms,
        )
        self._publish(AgentLoopEvent.COMPACTION_COMPLETED, result.model_dump())
        return result

    async def _compact(
        self,
        session_id: str,
        provider: Provider,
        tools: list[ToolInfo],
        started: float,
    ) -> CompactionResult | None:
        session = await self._store.get_session(session_id)
        messages = await self._store.list_messages(session_id)
        prior_summary = ""
        if session.has_summary:
            boundary = session.summarized_at or 0
            messages = [m for m in messages if m.created_at > boundary]
            prior_summary = session.summary or ""
        messages = _without_open_tail(messages)

        if not messages:
            return None

        prompt = self.build_prompt(messages, prior_summary)
        try:
            response = await provider.send_messages(prompt, tools)
        except ProviderError as exc:
            raise CompactionError(f"failed to get summary from the assistant: {exc}") from exc

        summary = response.content.strip()
        if not summary:
            raise CompactionError("received empty summary from the assistant")

        summarized_at = max(m.created_at for m in messages)
        await self._track_usage(session_id, provider.model(), response.usage)
        await self._store.set_summary(
            session_id,
            summary,
            summarized_at,
            context_tokens=response.usage.output_tokens,
        )

        return CompactionResult(
            session_id=session_id,
            summary=summary,
            summarized_at=summarized_at,
            compacted_message_count=len(messages),
            had_prior_summary=bool(prior_summary),
            usage=response.usage,
            elapsed_ms=(time.monotonic() - started) * 1000,
        )

    def build_prompt(self, messages: list[Message], prior_summary: str = "") -> list[Message]:
        """System instruction, prior summary, the messages, then the summary request."""
        prompt = [Message(role="system", parts=[TextPart(text=self._config.system_prompt)])]
        if prior_summary:
            prompt.append(Message(role="assistant", parts=[TextPart(text=prior_summary)]))
        prompt.extend(messages)
        prompt.append(Message(role="user", parts=[TextPart(text=self._config.summary_request)]))
        return prompt

    def _publish(self, event: AgentLoopEvent, payload: dict[str, object]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event, payload)


def _without_open_tail(messages: list[Message]) -> list[Message]:
    end = len(messages)
    while end and not messages[end - 1].is_finished:
        end -= 1
    return messages[:end]
