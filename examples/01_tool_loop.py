"""
Example 01: Tool Loop
=====================

Demonstrates the agent engine end to end:
- Registering a tool and running a session until the model stops calling it
- Listening to run and compaction events on the EventBus
- Cancelling a run that takes too long
- Inspecting usage and compacting the session manually

Run with a real LLM (set your API key first):
    ANTHROPIC_API_KEY=sk-... uv run python examples/01_tool_loop.py
"""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))


async def main() -> None:
    from agentloop import (
        Agent,
        AgentLoopConfig,
        AgentLoopEvent,
        BaseTool,
        EventBus,
        LiteLLMProvider,
        SessionStore,
        StoreConfig,
        ToolCall,
        ToolContext,
        ToolInfo,
        ToolRegistry,
        ToolResponse,
    )

    class ReadFileTool(BaseTool):
        def info(self) -> ToolInfo:
            return ToolInfo(
                name="read_file",
                description="Read a UTF-8 text file and return its first 4000 characters.",
                parameters={"path": {"type": "string", "description": "File to read"}},
                required=["path"],
            )

        async def run(self, call: ToolCall, context: ToolContext) -> ToolResponse:
            path = Path(json.loads(call.input or "{}").get("path", ""))
            if not path.is_file():
                return ToolResponse.error(f"no such file: {path}")
            return ToolResponse.text(path.read_text(errors="replace")[:4000])

    print("=== agentloop Tool Loop Example ===\n")

    bus = EventBus()

    def on_event(event: AgentLoopEvent, payload: dict[str, Any]) -> None:
        if event.startswith(("run.", "compaction.", "title.")):
            print(f"  [EVENT] {event}: {payload}")

    bus.subscribe_all(on_event)

    config = AgentLoopConfig(store=StoreConfig(db_path="/tmp/agentloop_example_01.db"))
    store = SessionStore(config.store, event_bus=bus)
    await store.initialize()

    model = config.resolve_model(config.agents["primary"].model)
    title_model = config.resolve_model(config.agents["title"].model)
    agent = Agent(
        store,
        LiteLLMProvider(model, system_prompt="You are a concise code reviewer."),
        ToolRegistry([ReadFileTool()]),
        config,
        title_provider=LiteLLMProvider(title_model, max_tokens=config.agents["title"].max_tokens),
        event_bus=bus,
    )

    try:
        session = await store.create_session()
        print(f"Session: {session.id}\n")

        # ── Turn 1: let the model call read_file ─────────────────────────────
        run = await agent.run(session.id, f"Summarise {Path(__file__).resolve()} in two sentences.")
        event = await run.wait()
        if event.ok:
            print(f"\nAssistant: {event.message.content()}\n")
        else:
            print(f"\nRun failed: {event.error}\n")

        # ── Turn 2: cancel a run after one second ────────────────────────────
        run = await agent.run(session.id, "Now write a 2000-word essay about tool-using agents.")
        await asyncio.sleep(1.0)
        agent.cancel(session.id)
        event = await run.wait()
        print(f"Cancelled: {event.cancelled}\n")

        # ── Usage and manual compaction ──────────────────────────────────────
        percent, needs = await agent.estimate_context_window_usage(session.id)
        print(f"Tokens used: {await agent.get_usage(session.id):,}")
        print(f"Context window: {percent:.1f}% (compaction needed: {needs})")

        result = await agent.compact_session(session.id)
        if result is not None:
            print(f"\nCompacted {result.compacted_message_count} messages:")
            print(f"  {result.summary[:300]}")

        session = await store.get_session(session.id)
        print(f"\nTitle: {session.title or '(none yet)'}")
        print(f"Cost: ${session.cost:.4f}")
    finally:
        await agent.close()
        await store.close()


if __name__ == "__main__":
    asyncio.run(main())
