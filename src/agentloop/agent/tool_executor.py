"""Sequential execution of one turn's tool calls."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog

from agentloop.agent.concurrency import CancelScope, uncancel_current_task
from agentloop.models.message import FinishReason, Message, ToolCallPart, ToolResultPart
from agentloop.tools.base import PermissionDeniedError, ToolCall, ToolContext
from agentloop.tools.registry import ToolRegistry

PERMISSION_DENIED_TEXT = "Permission denied"
CANCELED_TEXT = "Tool execution canceled by user"


@dataclass
class ToolBatchOutcome:
    """Index-aligned results for one turn's calls, plus how the batch ended."""

    results: list[ToolResultPart] = field(default_factory=list)
    permission_denied: bool = False
    cancelled: bool = False


class ToolExecutor:
    """
    Runs the finalized tool calls of an assistant message in order.

    Every call gets exactly one result:

    - unknown tool name: ``"Tool not found: <name>"`` (error), batch continues;
    - any exception from the tool: its text (error), batch continues;
    - :class:`PermissionDeniedError`: ``"Permission denied"`` for that call,
      ``"Tool execution canceled by user"`` for every later call, and the
      message's finish reason becomes ``permission_denied``;
    - cancellation before or during a call: that call and all later ones are
      marked canceled. Results of completed calls are kept.
    """

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry
        self._logger = structlog.get_logger("agentloop.agent.tools")

    async def execute(
        self, scope: CancelScope, session_id: str, message: Message
    ) -> ToolBatchOutcome:
        calls = message.tool_calls()
        outcome = ToolBatchOutcome()
        context = ToolContext(session_id=session_id, message_id=message.id)
        log = self._logger.bind(session_id=session_id, message_id=message.id)

        for index, call in enumerate(calls):
            if scope.cancelled:
                outcome.results.extend(canceled_result(c) for c in calls[index:])
                outcome.cancelled = True
                break

            tool = self._registry.get(call.name)
            if tool is None:
                log.warning("tool_not_found", tool_name=call.name)
                outcome.results.append(
                    _error(call, f"Tool not found: {call.name}")
                )
                continue

            try:
                response = await tool.run(
                    ToolCall(id=call.id, name=call.name, input=call.input), context
                )
            except PermissionDeniedError:
                log.info("tool_permission_denied", tool_name=call.name)
                outcome.results.append(_error(call, PERMISSION_DENIED_TEXT))
                outcome.results.extend(canceled_result(c) for c in calls[index + 1 :])
                outcome.permission_denied = True
                message.add_finish(FinishReason.PERMISSION_DENIED)
                break
            except asyncio.CancelledError:
                if not scope.cancelled:
                    raise
                uncancel_current_task()
                outcome.results.extend(canceled_result(c) for c in calls[index:])
                outcome.cancelled = True
                break
            except Exception as exc:
                log.warning("tool_failed", tool_name=call.name, error=str(exc))
                outcome.results.append(_error(call, str(exc)))
                continue

            outcome.results.append(
                ToolResultPart(
                    tool_call_id=call.id,
                    name=call.name,
                    content=response.content,
                    metadata=response.metadata,
                    is_error=response.is_error,
                )
            )

        return outcome


def _error(call: ToolCallPart, content: str) -> ToolResultPart:
    return ToolResultPart(tool_call_id=call.id, name=call.name, content=content, is_error=True)


def canceled_result(call: ToolCallPart) -> ToolResultPart:
    """The result recorded for a call that never ran."""
    return _error(call, CANCELED_TEXT)
