"""Tests for SessionStore and StorePool."""

from __future__ import annotations

import pytest

from agentloop.events.bus import AgentLoopEvent
from agentloop.models.config import StoreConfig
from agentloop.models.message import (
    BinaryPart,
    FinishPart,
    FinishReason,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    now_ms,
)
from agentloop.store.pool import StorePool, resolve_db_path
from agentloop.store.sqlite import (
    DuplicateIDError,
    MessageNotFoundError,
    SessionNotFoundError,
    SessionStore,
    StoreError,
)
from tests.conftest import events_of


class TestSessions:
    async def test_create_session(self, store):
        """create_session returns a fresh session with zeroed counters."""
        session = await store.create_session(title="scratch")
        assert session.id.startswith("sess_")
        assert session.title == "scratch"
        assert session.message_count == 0
        assert session.cost == 0.0
        assert session.has_summary is False

    async def test_create_session_duplicate_raises(self, store):
        """An explicit duplicate ID raises DuplicateIDError."""
        await store.create_session(id="sess_dup")
        with pytest.raises(DuplicateIDError):
            await store.create_session(id="sess_dup")

    async def test_get_session_not_found(self, store):
        with pytest.raises(SessionNotFoundError):
            await store.get_session("sess_missing")

    async def test_list_sessions_newest_first(self, store):
        """list_sessions orders by creation, newest first."""
        created = [await store.create_session(title=f"s{i}") for i in range(3)]
        listed = await store.list_sessions()
        assert [s.id for s in listed] == [s.id for s in reversed(created)]

    async def test_list_sessions_by_parent(self, store, session_id):
        child = await store.create_session(parent_session_id=session_id)
        await store.create_session()
        listed = await store.list_sessions(parent_session_id=session_id)
        assert [s.id for s in listed] == [child.id]

    async def test_save_session_overwrites(self, store, session_id):
        session = await store.get_session(session_id)
        saved = await store.save_session(session.model_copy(update={"title": "renamed"}))
        assert saved.title == "renamed"
        assert (await store.get_session(session_id)).title == "renamed"

    async def test_save_unknown_session_raises(self, store, session_id):
        session = await store.get_session(session_id)
        with pytest.raises(SessionNotFoundError):
            await store.save_session(session.model_copy(update={"id": "sess_ghost"}))

    async def test_rename_keeps_counters(self, store, session_id):
        """rename_session touches only the title."""
        await store.record_usage(
            session_id, prompt_tokens=10, completion_tokens=5, context_tokens=15, cost=0.5
        )
        renamed = await store.rename_session(session_id, "New title")
        assert renamed.title == "New title"
        assert renamed.prompt_tokens == 10
        assert renamed.cost == pytest.approx(0.5)

    async def test_record_usage_accumulates(self, store, session_id):
        """Counters add up; context_tokens is replaced."""
        await store.record_usage(
            session_id, prompt_tokens=100, completion_tokens=20, context_tokens=120, cost=0.01
        )
        session = await store.record_usage(
            session_id, prompt_tokens=50, completion_tokens=10, context_tokens=60, cost=0.02
        )
        assert session.prompt_tokens == 150
        assert session.completion_tokens == 30
        assert session.context_tokens == 60
        assert session.cost == pytest.approx(0.03)
        assert session.total_tokens == 180

    async def test_set_summary(self, store, session_id):
        boundary = now_ms()
        session = await store.set_summary(session_id, "so far", boundary, context_tokens=7)
        assert session.summary == "so far"
        assert session.summarized_at == boundary
        assert session.context_tokens == 7
        assert session.has_summary is True

    async def test_delete_session_removes_messages(self, store, session_id):
        msg = await store.create_message(session_id, "user", [TextPart(text="hi")])
        await store.delete_session(session_id)
        with pytest.raises(SessionNotFoundError):
            await store.get_session(session_id)
        with pytest.raises(MessageNotFoundError):
            await store.get_message(msg.id)

    async def test_session_events_published(self, store, event_bus):
        session = await store.create_session(title="evented")
        await store.delete_session(session.id)
        assert events_of(event_bus, AgentLoopEvent.SESSION_CREATED) == [
            {"session_id": session.id, "title": "evented"}
        ]
        assert events_of(event_bus, AgentLoopEvent.SESSION_DELETED)[0]["session_id"] == session.id


class TestMessages:
    async def test_user_message_gets_stop_finish(self, store, session_id):
        """User messages are finished the moment they are stored."""
        msg = await store.create_message(session_id, "user", [TextPart(text="hello")])
        assert msg.finish_reason == FinishReason.STOP
        assert msg.finished_at is not None
        loaded = await store.get_message(msg.id)
        assert loaded.content() == "hello"
        assert loaded.finish_reason == FinishReason.STOP

    async def test_tool_message_gets_stop_finish(self, store, session_id):
        msg = await store.create_message(
            session_id,
            "tool",
            [ToolResultPart(tool_call_id="call_1", name="echo", content="x")],
        )
        loaded = await store.get_message(msg.id)
        assert loaded.finish_reason == FinishReason.STOP
        assert loaded.finished_at is not None
        assert loaded.tool_results()[0].content == "x"

    async def test_assistant_message_starts_unfinished(self, store, session_id):
        msg = await store.create_message(session_id, "assistant", model="test/model")
        assert msg.parts == []
        assert msg.finished_at is None
        assert msg.model == "test/model"

    async def test_invalid_role_rejected(self, store, session_id):
        with pytest.raises(ValueError):
            await store.create_message(session_id, "narrator")  # type: ignore[arg-type]

    async def test_unknown_session_rejected(self, store):
        with pytest.raises(SessionNotFoundError):
            await store.create_message("sess_missing", "user", [TextPart(text="x")])

    async def test_ids_and_timestamps_strictly_increase(self, store, session_id):
        """Back-to-back messages never share a created_at, and ids sort in creation order."""
        created = [
            await store.create_message(session_id, "user", [TextPart(text=str(i))])
            for i in range(5)
        ]
        timestamps = [m.created_at for m in created]
        assert all(a < b for a, b in zip(timestamps, timestamps[1:]))
        listed = await store.list_messages(session_id)
        assert [m.id for m in listed] == [m.id for m in created]
        assert sorted(m.id for m in created) == [m.id for m in created]

    async def test_message_count_tracks_creates_and_deletes(self, store, session_id):
        first = await store.create_message(session_id, "user", [TextPart(text="a")])
        await store.create_message(session_id, "assistant")
        assert (await store.get_session(session_id)).message_count == 2
        await store.delete_message(first.id)
        assert (await store.get_session(session_id)).message_count == 1

    async def test_created_after_summary_boundary(self, store, session_id):
        """A message written after compaction always lands after summarized_at."""
        boundary = now_ms() + 60_000
        await store.set_summary(session_id, "summary", boundary, context_tokens=1)
        msg = await store.create_message(session_id, "user", [TextPart(text="next")])
        assert msg.created_at > boundary

    async def test_list_after_matches_filter(self, store, session_id):
        created = [
            await store.create_message(session_id, "user", [TextPart(text=str(i))])
            for i in range(4)
        ]
        cutoff = created[1].created_at
        after = await store.list_messages_after(session_id, cutoff)
        everything = await store.list_messages(session_id)
        assert [m.id for m in after] == [m.id for m in everything if m.created_at > cutoff]
        assert [m.id for m in after] == [m.id for m in created[2:]]

    async def test_parts_round_trip(self, store, session_id):
        """Every part kind survives persistence with its fields intact."""
        parts = [
            ReasoningPart(text="thinking"),
            TextPart(text="answer"),
            ToolCallPart(id="call_1", name="echo", input='{"text": "x"}', finished=True),
            FinishPart(reason=FinishReason.TOOL_USE, time=1234),
        ]
        msg = await store.create_message(session_id, "assistant", parts)
        loaded = await store.get_message(msg.id)
        assert loaded.parts == parts
        assert loaded.finished_at == 1234

        tool_msg = await store.create_message(
            session_id,
            "tool",
            [ToolResultPart(tool_call_id="call_1", name="echo", content="x", is_error=True)],
        )
        loaded_tool = await store.get_message(tool_msg.id)
        assert loaded_tool.tool_results()[0].is_error is True

    async def test_binary_part_round_trip(self, store, session_id):
        part = BinaryPart.from_bytes(b"\x89PNG", "image/png", path="shot.png")
        msg = await store.create_message(session_id, "user", [TextPart(text="look"), part])
        loaded = await store.get_message(msg.id)
        assert loaded.binary_content()[0].raw() == b"\x89PNG"

    async def test_update_message_overwrites_and_is_idempotent(self, store, session_id):
        msg = await store.create_message(session_id, "assistant")
        msg.append_content("partial")
        await store.update_message(msg)
        msg.add_finish(FinishReason.STOP)
        await store.update_message(msg)
        await store.update_message(msg)

        loaded = await store.get_message(msg.id)
        assert loaded.content() == "partial"
        assert loaded.finish_reason == FinishReason.STOP
        assert loaded.finished_at == msg.finish_part.time
        assert len(await store.list_messages(session_id)) == 1

    async def test_update_unknown_message_raises(self, store, session_id):
        msg = await store.create_message(session_id, "assistant")
        ghost = msg.model_copy(update={"id": "msg_ghost"})
        with pytest.raises(MessageNotFoundError):
            await store.update_message(ghost)

    async def test_delete_session_messages(self, store, session_id):
        for i in range(3):
            await store.create_message(session_id, "user", [TextPart(text=str(i))])
        removed = await store.delete_session_messages(session_id)
        assert removed == 3
        assert await store.list_messages(session_id) == []
        assert (await store.get_session(session_id)).message_count == 0

    async def test_message_events_published(self, store, session_id, event_bus):
        msg = await store.create_message(session_id, "assistant")
        await store.update_message(msg)
        assert events_of(event_bus, AgentLoopEvent.MESSAGE_CREATED) == [
            {"session_id": session_id, "message_id": msg.id, "role": "assistant"}
        ]
        assert len(events_of(event_bus, AgentLoopEvent.MESSAGE_UPDATED)) == 1


class TestStoreLifecycle:
    async def test_uninitialized_store_raises(self, config):
        store = SessionStore(config.store)
        with pytest.raises(StoreError):
            await store.create_session()

    async def test_private_connection(self, tmp_path):
        """A store without a pool opens and closes its own connection."""
        store = SessionStore(StoreConfig(db_path=str(tmp_path / "own.db")))
        await store.initialize()
        try:
            session = await store.create_session()
            assert (await store.get_session(session.id)).id == session.id
        finally:
            await store.close()

    async def test_memory_database(self):
        store = SessionStore(StoreConfig(db_path=":memory:"))
        await store.initialize()
        try:
            session = await store.create_session()
            await store.create_message(session.id, "user", [TextPart(text="hi")])
            assert len(await store.list_messages(session.id)) == 1
        finally:
            await store.close()

    async def test_pool_shares_connection(self, config, pool):
        """Two stores on the same path share one connection and one write lock."""
        a = SessionStore(config.store, pool=pool)
        b = SessionStore(config.store, pool=pool)
        await a.initialize()
        await b.initialize()
        session = await a.create_session()
        assert (await b.get_session(session.id)).id == session.id
        assert pool.write_lock(config.store.db_path) is pool.write_lock(
            resolve_db_path(config.store.db_path)
        )

    async def test_pool_close_all(self, config):
        pool = StorePool()
        first = await pool.acquire(config.store.db_path)
        await pool.close_all()
        second = await pool.acquire(config.store.db_path)
        assert first is not second
        await pool.close_all()
