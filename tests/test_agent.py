"""Tests for the Agent: runs, tool loops, cancellation, usage and model switching."""

from __future__ import annotations

import asyncio

import pytest

from agentloop.agent.orchestrator import Agent, default_provider_factory
from agentloop.agent.tool_executor import CANCELED_TEXT, PERMISSION_DENIED_TEXT
from agentloop.errors import (
    AgentBusyError,
    AgentRunError,
    ConfigError,
    RequestCancelledError,
    SessionBusyError,
)
from agentloop.events.bus import AgentLoopEvent
from agentloop.models.config import ModelInfo
from agentloop.models.message import Attachment, FinishReason, TokenUsage, ToolCallPart
from agentloop.providers.base import (
    ContentDelta,
    ProviderError,
    ProviderErrorEvent,
    ToolUseDelta,
    ToolUseStart,
)
from agentloop.providers.litellm_provider import LiteLLMProvider
from tests.conftest import events_of
from tests.fakes import BLOCK, RAISE, Hold, ScriptedProvider, text_turn, tool_turn


class TestRun:
    async def test_simple_reply(self, agent, store, provider, session_id, event_bus):
        """One turn: a finished user message, then the assistant's answer."""
        provider.turns = [text_turn("Hi there!")]

        run = await agent.run(session_id, "hello")
        event = await run.wait()

        assert event.ok
        assert event.message.content() == "Hi there!"
        assert event.message.finish_reason == FinishReason.STOP
        messages = await store.list_messages(session_id)
        assert [m.role for m in messages] == ["user", "assistant"]
        assert messages[0].content() == "hello"
        assert messages[0].finish_reason == FinishReason.STOP
        assert messages[1].content() == "Hi there!"
        assert messages[1].model == "test/model"
        assert agent.is_session_busy(session_id) is False
        assert events_of(event_bus, AgentLoopEvent.RUN_COMPLETED) == [
            {"session_id": session_id, "message_id": event.message.id}
        ]

    async def test_run_iterates_one_event(self, agent, provider, session_id):
        provider.turns = [text_turn("once")]
        run = await agent.run(session_id, "hello")
        events = [event async for event in run]
        assert len(events) == 1
        assert events[0].message.content() == "once"
        assert run.done()

    async def test_history_passed_to_provider(self, agent, provider, session_id):
        provider.turns = [text_turn("first"), text_turn("second")]
        await (await agent.run(session_id, "one")).wait()
        await (await agent.run(session_id, "two")).wait()

        second_history = provider.calls[1]
        assert [m.role for m in second_history] == ["user", "assistant", "user"]
        assert [m.content() for m in second_history] == ["one", "first", "two"]

    async def test_title_generated_for_first_message(self, agent, store, title_provider, session_id, event_bus):
        await (await agent.run(session_id, "plan my trip")).wait()
        await agent.close()

        session = await store.get_session(session_id)
        assert session.title == "Friendly greeting"
        assert "plan my trip" in title_provider.sent[0][0].content()
        assert events_of(event_bus, AgentLoopEvent.TITLE_GENERATED)[0]["title"] == "Friendly greeting"

    async def test_title_only_for_first_message(self, agent, title_provider, session_id):
        await (await agent.run(session_id, "one")).wait()
        await (await agent.run(session_id, "two")).wait()
        await agent.close()
        assert len(title_provider.sent) == 1

    async def test_title_failure_does_not_fail_run(self, agent, store, title_provider, session_id, event_bus):
        title_provider.send_error = ProviderError("title model down")
        event = await (await agent.run(session_id, "hello")).wait()
        await agent.close()

        assert event.ok
        assert (await store.get_session(session_id)).title == ""
        assert events_of(event_bus, AgentLoopEvent.TITLE_FAILED)[0]["error"] == "title model down"

    async def test_usage_recorded(self, agent, store, provider, session_id):
        provider.turns = [
            text_turn("ok", usage=TokenUsage(input_tokens=100, output_tokens=40, cache_read_tokens=10))
        ]
        await (await agent.run(session_id, "hello")).wait()

        session = await store.get_session(session_id)
        assert session.prompt_tokens == 100
        assert session.completion_tokens == 50
        assert session.context_tokens == 150
        assert await agent.get_usage(session_id) == 150
        assert session.cost > 0

    async def test_attachments_dropped_when_unsupported(self, agent, store, session_id):
        attachment = Attachment(file_path="a.png", mime_type="image/png", content=b"png")
        await (await agent.run(session_id, "see", [attachment])).wait()
        user = (await store.list_messages(session_id))[0]
        assert user.binary_content() == []

    async def test_attachments_kept_when_supported(self, store, registry, session_id):
        provider = ScriptedProvider(
            model=ModelInfo(id="vision/model", context_window=1_000, supports_attachments=True)
        )
        agent = Agent(store, provider, registry)
        attachment = Attachment(file_path="a.png", mime_type="image/png", content=b"png")
        try:
            await (await agent.run(session_id, "see", [attachment])).wait()
        finally:
            await agent.close()
        user = (await store.list_messages(session_id))[0]
        assert user.binary_content()[0].raw() == b"png"
        assert provider.calls[0][-1].binary_content()[0].path == "a.png"


class TestBusy:
    async def test_second_run_rejected(self, agent, provider, session_id):
        """A busy session rejects new runs instead of queueing them."""
        provider.turns = [[BLOCK]]
        run = await agent.run(session_id, "first")
        await provider.blocked.wait()

        assert agent.is_busy() is True
        assert agent.is_session_busy(session_id) is True
        with pytest.raises(SessionBusyError):
            await agent.run(session_id, "second")

        agent.cancel(session_id)
        await run.wait()
        assert agent.is_busy() is False

    async def test_other_sessions_run_concurrently(self, agent, store, provider, session_id):
        provider.turns = [[BLOCK], text_turn("other answer")]
        blocked_run = await agent.run(session_id, "first")
        await provider.blocked.wait()

        other = await store.create_session()
        event = await (await agent.run(other.id, "second")).wait()
        assert event.message.content() == "other answer"

        agent.cancel(session_id)
        await blocked_run.wait()

    async def test_cancel_idle_session_is_noop(self, agent, session_id):
        agent.cancel(session_id)
        agent.cancel("sess_unknown")
        assert agent.is_busy() is False


class TestPause:
    async def test_pause_holds_running_turn(self, agent, store, provider, session_id):
        """No stream event is applied while paused; the turn resumes on exit."""
        hold = Hold()
        provider.turns = [[ContentDelta(text="first "), hold, *text_turn("second")]]
        run = await agent.run(session_id, "go")
        await hold.reached.wait()

        async with agent.paused():
            hold.release.set()
            await asyncio.sleep(0.05)
            assistant = (await store.list_messages(session_id))[-1]
            assert assistant.content() == "first "
            assert assistant.is_finished is False
            assert run.done() is False

        event = await run.wait()
        assert event.ok
        assert event.message.content() == "first second"
        assert (await store.list_messages(session_id))[-1].finish_reason == FinishReason.STOP

    async def test_pause_when_idle_enters_immediately(self, agent):
        async with agent.paused():
            assert agent.is_busy() is False


class TestToolLoop:
    async def test_tool_call_then_answer(self, agent, store, provider, echo_tool, session_id):
        provider.turns = [
            tool_turn([("call_1", "echo", '{"text": "ping"}')]),
            text_turn("The tool said ping."),
        ]
        event = await (await agent.run(session_id, "use the tool")).wait()

        assert event.ok
        assert event.message.content() == "The tool said ping."
        messages = await store.list_messages(session_id)
        assert [m.role for m in messages] == ["user", "assistant", "tool", "assistant"]
        assert messages[1].finish_reason == FinishReason.TOOL_USE
        assert messages[1].tool_calls()[0].input == '{"text": "ping"}'
        assert messages[2].tool_results()[0].content == "echo: ping"
        assert messages[2].finish_reason == FinishReason.STOP
        assert echo_tool.contexts[0].message_id == messages[1].id

        second_history = provider.calls[1]
        assert [m.role for m in second_history] == ["user", "assistant", "tool"]

    async def test_unknown_tool_result_fed_back(self, agent, store, provider, session_id):
        """An unknown tool is reported to the model and the loop continues."""
        provider.turns = [
            tool_turn([("call_1", "frobnicate", "{}")]),
            text_turn("Sorry, I cannot do that."),
        ]
        event = await (await agent.run(session_id, "frobnicate it")).wait()

        assert event.ok
        tool_message = provider.calls[1][-1]
        result = tool_message.tool_results()[0]
        assert result.content == "Tool not found: frobnicate"
        assert result.is_error is True

    async def test_tool_failure_fed_back(self, agent, provider, session_id):
        provider.turns = [tool_turn([("call_1", "boom", "{}")]), text_turn("It failed.")]
        event = await (await agent.run(session_id, "explode")).wait()
        assert event.ok
        assert provider.calls[1][-1].tool_results()[0].content == "kaboom"

    async def test_permission_denied_ends_run(self, agent, store, provider, echo_tool, session_id):
        provider.turns = [
            tool_turn(
                [
                    ("c1", "echo", '{"text": "a"}'),
                    ("c2", "deny", "{}"),
                    ("c3", "echo", '{"text": "c"}'),
                ]
            ),
            text_turn("never streamed"),
        ]
        event = await (await agent.run(session_id, "do three things")).wait()

        assert event.ok
        assert event.message.finish_reason == FinishReason.PERMISSION_DENIED
        assert len(provider.calls) == 1
        assert len(echo_tool.calls) == 1

        messages = await store.list_messages(session_id)
        assert messages[1].finish_reason == FinishReason.PERMISSION_DENIED
        assert [r.content for r in messages[2].tool_results()] == [
            "echo: a",
            PERMISSION_DENIED_TEXT,
            CANCELED_TEXT,
        ]


class TestCancellation:
    async def test_cancel_mid_stream(self, agent, store, provider, session_id, event_bus):
        """Partial output is kept and the message is finished as canceled."""
        provider.turns = [[ContentDelta(text="partial answer"), BLOCK]]
        run = await agent.run(session_id, "long question")
        await provider.blocked.wait()

        agent.cancel(session_id)
        event = await run.wait()

        assert event.cancelled
        assert isinstance(event.error, RequestCancelledError)
        assistant = (await store.list_messages(session_id))[-1]
        assert assistant.role == "assistant"
        assert assistant.content() == "partial answer"
        assert assistant.finish_reason == FinishReason.CANCELED
        assert agent.is_session_busy(session_id) is False
        assert events_of(event_bus, AgentLoopEvent.RUN_CANCELLED) == [{"session_id": session_id}]

    async def test_cancel_is_idempotent(self, agent, provider, session_id):
        provider.turns = [[BLOCK]]
        run = await agent.run(session_id, "q")
        await provider.blocked.wait()
        agent.cancel(session_id)
        agent.cancel(session_id)
        assert (await run.wait()).cancelled

    async def test_cancel_during_tool(self, agent, store, provider, slow_tool, session_id):
        provider.turns = [tool_turn([("c1", "slow", "{}"), ("c2", "echo", '{"text": "x"}')])]
        run = await agent.run(session_id, "slow things")
        await slow_tool.started.wait()

        agent.cancel(session_id)
        event = await run.wait()

        assert event.cancelled
        messages = await store.list_messages(session_id)
        assert [m.role for m in messages] == ["user", "assistant", "tool"]
        assert messages[1].finish_reason == FinishReason.CANCELED
        assert [r.content for r in messages[2].tool_results()] == [CANCELED_TEXT, CANCELED_TEXT]

    async def test_provider_reported_cancellation(self, agent, store, provider, session_id):
        provider.turns = [[ContentDelta(text="so"), ProviderErrorEvent(message="aborted", cancelled=True)]]
        event = await (await agent.run(session_id, "q")).wait()
        assert event.cancelled
        assert (await store.list_messages(session_id))[-1].finish_reason == FinishReason.CANCELED

    async def test_cancel_mid_tool_call_answers_open_calls(self, agent, store, provider, session_id):
        """A call cut off while streaming still gets a result, so the next turn is well formed."""
        provider.turns = [
            [
                ToolUseStart(tool_call=ToolCallPart(id="c1", name="echo")),
                ToolUseDelta(tool_call_id="c1", input='{"text": '),
                BLOCK,
            ],
            text_turn("fresh start"),
        ]
        run = await agent.run(session_id, "echo something")
        await provider.blocked.wait()
        agent.cancel(session_id)
        assert (await run.wait()).cancelled

        messages = await store.list_messages(session_id)
        assert [m.role for m in messages] == ["user", "assistant", "tool"]
        assert messages[1].finish_reason == FinishReason.CANCELED
        assert [c.id for c in messages[1].tool_calls()] == ["c1"]
        assert [(r.tool_call_id, r.content) for r in messages[2].tool_results()] == [
            ("c1", CANCELED_TEXT)
        ]

        await (await agent.run(session_id, "try again")).wait()
        assert [m.role for m in provider.calls[1]] == ["user", "assistant", "tool", "user"]

    async def test_cancel_while_saving_tool_results(self, agent, store, provider, session_id, event_bus):
        """Cancelling as the tool message is written still finishes the turn as canceled."""

        def cancel_on_tool_message(event, payload):
            if payload["role"] == "tool":
                agent.cancel(session_id)

        event_bus.subscribe(AgentLoopEvent.MESSAGE_CREATED, cancel_on_tool_message)
        provider.turns = [tool_turn([("c1", "echo", '{"text": "x"}')]), text_turn("never")]

        event = await (await agent.run(session_id, "echo x")).wait()

        assert event.cancelled
        assert len(provider.calls) == 1
        messages = await store.list_messages(session_id)
        assert [m.role for m in messages] == ["user", "assistant", "tool"]
        assert messages[1].finish_reason == FinishReason.CANCELED
        assert messages[2].tool_results()[0].content == "echo: x"
        assert agent.is_session_busy(session_id) is False

    async def test_session_usable_after_cancel(self, agent, provider, session_id):
        provider.turns = [[BLOCK], text_turn("fresh")]
        run = await agent.run(session_id, "q")
        await provider.blocked.wait()
        agent.cancel(session_id)
        await run.wait()

        event = await (await agent.run(session_id, "again")).wait()
        assert event.message.content() == "fresh"


class TestFailures:
    async def test_provider_error_fails_run(self, agent, store, provider, session_id, event_bus):
        provider.turns = [[ContentDelta(text="half"), ProviderErrorEvent(message="rate limited")]]
        event = await (await agent.run(session_id, "q")).wait()

        assert not event.ok
        assert isinstance(event.error, ProviderError)
        assert not event.cancelled
        assistant = (await store.list_messages(session_id))[-1]
        assert assistant.finish_reason == FinishReason.ERROR
        assert events_of(event_bus, AgentLoopEvent.RUN_FAILED)[0]["error"] == "rate limited"
        assert agent.is_busy() is False

    async def test_provider_error_after_tool_start_answers_calls(self, agent, store, provider, session_id):
        provider.turns = [
            [
                ToolUseStart(tool_call=ToolCallPart(id="c1", name="echo")),
                ProviderErrorEvent(message="connection reset"),
            ]
        ]
        event = await (await agent.run(session_id, "q")).wait()

        assert isinstance(event.error, ProviderError)
        messages = await store.list_messages(session_id)
        assert [m.role for m in messages] == ["user", "assistant", "tool"]
        assert messages[1].finish_reason == FinishReason.ERROR
        assert messages[2].tool_results()[0].tool_call_id == "c1"

    async def test_faulty_subscriber_does_not_fail_run(self, agent, provider, session_id, event_bus):
        def broken(event, payload):
            raise RuntimeError("subscriber bug")

        event_bus.subscribe(AgentLoopEvent.MESSAGE_UPDATED, broken)
        provider.turns = [text_turn("still fine")]

        event = await (await agent.run(session_id, "hello")).wait()

        assert event.ok
        assert event.message.content() == "still fine"

    async def test_unexpected_exception_wrapped(self, agent, provider, session_id):
        provider.turns = [[RAISE]]
        event = await (await agent.run(session_id, "q")).wait()

        assert isinstance(event.error, AgentRunError)
        assert isinstance(event.error.__cause__, RuntimeError)
        assert agent.is_busy() is False

    async def test_stream_without_completion(self, agent, store, provider, session_id):
        provider.turns = [[ContentDelta(text="cut off")]]
        event = await (await agent.run(session_id, "q")).wait()
        assert event.ok
        assert event.message.finish_reason == FinishReason.UNKNOWN
        assert (await store.list_messages(session_id))[-1].content() == "cut off"


class TestUsage:
    async def test_track_usage_cost(self, agent, store, provider, session_id):
        await agent.track_usage(
            session_id,
            provider.model(),
            TokenUsage(input_tokens=1_000_000, output_tokens=500_000),
        )
        session = await store.get_session(session_id)
        assert session.cost == pytest.approx(2.0)
        assert session.prompt_tokens == 1_000_000
        assert session.completion_tokens == 500_000

    async def test_estimate_context_window_usage(self, agent, store, session_id):
        await store.record_usage(
            session_id, prompt_tokens=0, completion_tokens=0, context_tokens=500, cost=0.0
        )
        percent, needs = await agent.estimate_context_window_usage(session_id)
        assert percent == pytest.approx(50.0)
        assert needs is False

        await store.record_usage(
            session_id, prompt_tokens=0, completion_tokens=0, context_tokens=920, cost=0.0
        )
        percent, needs = await agent.estimate_context_window_usage(session_id)
        assert needs is True


class TestUpdateModel:
    @pytest.fixture
    def built(self):
        return []

    @pytest.fixture
    def switching_agent(self, store, provider, registry, title_provider, event_bus, built):
        def factory(agent_name, model, max_tokens):
            built.append((agent_name, model.id, max_tokens))
            return ScriptedProvider(model=model)

        return Agent(
            store,
            provider,
            registry,
            title_provider=title_provider,
            event_bus=event_bus,
            provider_factory=factory,
        )

    async def test_switch_primary(self, switching_agent, built, event_bus):
        info = switching_agent.update_model("primary", "openai/gpt-4o")
        assert info.id == "openai/gpt-4o"
        assert switching_agent.provider.model().id == "openai/gpt-4o"
        assert switching_agent.config.agents["primary"].model == "openai/gpt-4o"
        assert built == [("primary", "openai/gpt-4o", None)]
        assert events_of(event_bus, AgentLoopEvent.MODEL_UPDATED) == [
            {"agent": "primary", "model": "openai/gpt-4o"}
        ]

    async def test_switch_title(self, switching_agent, provider, built):
        switching_agent.update_model("title", "openai/gpt-4o-mini")
        assert switching_agent.title_provider.model().id == "openai/gpt-4o-mini"
        assert switching_agent.provider is provider
        assert built[0][2] == 80

    async def test_unknown_agent(self, switching_agent):
        with pytest.raises(ConfigError):
            switching_agent.update_model("coder", "gpt-4o")

    async def test_factory_failure_keeps_config(self, store, provider):
        def broken(agent_name, model, max_tokens):
            raise RuntimeError("no credentials")

        agent = Agent(store, provider, provider_factory=broken)
        before = agent.config
        with pytest.raises(ConfigError, match="no credentials"):
            agent.update_model("primary", "openai/gpt-4o")
        assert agent.config is before
        assert agent.provider is provider

    async def test_rejected_while_busy(self, switching_agent, provider, session_id):
        provider.turns = [[BLOCK]]
        run = await switching_agent.run(session_id, "q")
        await provider.blocked.wait()
        try:
            with pytest.raises(AgentBusyError):
                switching_agent.update_model("primary", "openai/gpt-4o")
        finally:
            switching_agent.cancel(session_id)
            await run.wait()
            await switching_agent.close()

    def test_default_factory_builds_litellm_provider(self):
        provider = default_provider_factory(
            "primary", ModelInfo.from_model_string("openai/gpt-4o"), 123
        )
        assert isinstance(provider, LiteLLMProvider)
        assert provider.max_tokens() == 123
