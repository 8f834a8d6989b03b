"""Meta-tool that runs several tool calls concurrently in one model turn."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import structlog

from agentloop.tools.base import BaseTool, ToolCall, ToolContext, ToolInfo, ToolResponse
from agentloop.tools.registry import ToolRegistry

BATCH_TOOL_NAME = "batch"

BATCH_TOOL_DESCRIPTION = """\
Executes multiple tool calls in parallel and returns their results.

WHEN TO USE THIS TOOL:
- Use when you need to run multiple independent tool calls at once
- Helpful for gathering information from multiple sources simultaneously

HOW TO USE:
- Provide an array of tool calls, each with a name and input
- Each tool call will be executed in parallel
- Results are returned in the same order as the input calls

LIMITATIONS:
- All tools must be available in the current context
- Not suitable for tool calls that depend on each other's results"""

RESULT_SEPARATOR = "\n" + "=" * 80 + "\n"

logger = structlog.get_logger("agentloop.tools.batch")


class BatchTool(BaseTool):
    """
    Fans a list of ``{"name", "input"}`` sub-calls out with ``asyncio.gather``.

    The aggregated output is a JSON document ``{"results": [...]}`` whose
    entries follow input order. A failing sub-call (unknown tool, raised
    exception, permission denial) only fills in the ``error`` field of its
    own entry.
    """

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    def info(self) -> ToolInfo:
        return ToolInfo(
            name=BATCH_TOOL_NAME,
            description=BATCH_TOOL_DESCRIPTION,
            parameters={
                "calls": {
                    "type": "array",
                    "description": "Array of tool calls to execute in parallel",
                    "items": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string", "description": "Name of the tool to call"},
                            "input": {
                                "type": "object",
                                "description": "Input parameters for the tool",
                            },
                        },
                        "required": ["name", "input"],
                    },
                }
            },
            required=["calls"],
        )

    async def run(self, call: ToolCall, context: ToolContext) -> ToolResponse:
        try:
            params = json.loads(call.input or "{}")
            calls = params["calls"] if isinstance(params, dict) else None
            if calls is not None and not isinstance(calls, list):
                raise ValueError("'calls' must be an array")
        except (json.JSONDecodeError, KeyError, ValueError) as exc:
            return ToolResponse.error(f"error parsing parameters: {exc}")

        if not calls:
            return ToolResponse.error("no tool calls provided")

        results = await asyncio.gather(
            *(self._run_one(index, sub, context) for index, sub in enumerate(calls))
        )
        return ToolResponse.text(json.dumps({"results": results}))

    async def _run_one(self, index: int, sub: Any, context: ToolContext) -> dict[str, Any]:
        name = sub.get("name", "") if isinstance(sub, dict) else ""
        tool_input = sub.get("input", {}) if isinstance(sub, dict) else None
        entry: dict[str, Any] = {"tool_name": name, "tool_input": tool_input}
        if index > 0:
            entry["separator"] = RESULT_SEPARATOR

        tool = self._registry.get(name)
        if tool is None:
            entry["error"] = f"tool not found: {name}"
            return entry

        sub_call = ToolCall(id=f"batch-{index}", name=name, input=json.dumps(tool_input))
        try:
            response = await tool.run(sub_call, context)
        except Exception as exc:
            logger.warning("batch_sub_call_failed", tool_name=name, index=index, error=str(exc))
            entry["error"] = f"error executing tool {name}: {exc}"
            return entry

        entry["result"] = response.model_copy(
            update={"metadata": _tag_metadata(response.metadata, name)}
        ).model_dump()
        return entry


def _tag_metadata(metadata: str, tool_name: str) -> str:
    """Add ``"tool": <name>`` to JSON-object metadata. Other metadata is left alone."""
    if not metadata:
        return metadata
    try:
        parsed = json.loads(metadata)
    except json.JSONDecodeError:
        return metadata
    if not isinstance(parsed, dict):
        return metadata
    parsed["tool"] = tool_name
    return json.dumps(parsed, indent=2)
