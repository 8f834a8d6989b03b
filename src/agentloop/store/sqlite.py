"""SQLite-backed store for sessions and their ordered messages."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog
from pydantic import TypeAdapter

from agentloop.errors import AgentLoopError
from agentloop.events.bus import AgentLoopEvent, EventBus
from agentloop.ids import make_id
from agentloop.models.config import StoreConfig
from agentloop.models.message import (
    ContentPart,
    FinishPart,
    FinishReason,
    Message,
    MessageRole,
    now_ms,
)
from agentloop.models.session import Session
from agentloop.store.pool import open_connection, resolve_db_path

if TYPE_CHECKING:
    from agentloop.store.pool import StorePool

_PARTS = TypeAdapter(list[ContentPart])
_ROLES = frozenset({"system", "user", "assistant", "tool"})

# ── Exceptions ─────────────────────────────────────────────────────────────────


class StoreError(AgentLoopError):
    """Base class for store errors."""


class SessionNotFoundError(StoreError):
    """Raised when a session_id does not exist in the store."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id!r}")
        self.session_id = session_id


class MessageNotFoundError(StoreError):
    """Raised when a message_id does not exist in the store."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message not found: {message_id!r}")
        self.message_id = message_id


class DuplicateIDError(StoreError):
    """Raised when attempting to insert a record with a duplicate primary key."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Duplicate ID: {record_id!r}")
        self.record_id = record_id


@contextmanager
def _wrap(operation: str) -> Iterator[None]:
    """Re-raise driver errors as StoreError with the failing operation named."""
    try:
        yield
    except aiosqlite.Error as exc:
        raise StoreError(f"failed to {operation}: {exc}") from exc


# ── SessionStore ───────────────────────────────────────────────────────────────


class SessionStore:
    """
    Persistent record of sessions and their messages.

    Messages are keyed by ``(session_id, id)`` and always enumerated in id
    order. The store assigns ``created_at`` so that it strictly increases
    within a session and always lands after the session's ``summarized_at``
    boundary; ``list_messages_after(ts)`` is therefore exactly
    ``list_messages()`` filtered by ``created_at > ts``.

    Every mutation runs under one write lock per database (shared through the
    pool when one is supplied) and is published on the event bus.

    Usage::

        store = SessionStore(StoreConfig(db_path="./sessions.db"))
        await store.initialize()
        try:
            session = await store.create_session(title="scratch")
            await store.create_message(session.id, "user", [TextPart(text="hi")])
        finally:
            await store.close()
    """

    def __init__(
        self,
        config: StoreConfig,
        pool: StorePool | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._db_path = resolve_db_path(config.db_path)
        self._pool = pool
        self._event_bus = event_bus
        self._conn: aiosqlite.Connection | None = None
        self._write_lock: asyncio.Lock | None = None
        self._logger = structlog.get_logger("agentloop.store")

    async def initialize(self) -> None:
        """
        Open (or borrow) a database connection and apply the schema.

        Raises:
            StoreError: If the database cannot be opened or the schema fails.
        """
        with _wrap("initialize store"):
            if self._pool is not None:
                conn = await self._pool.acquire(
                    self._db_path,
                    wal_mode=self._config.wal_mode,
                    connection_timeout=self._config.connection_timeout,
                )
                self._write_lock = self._pool.write_lock(self._db_path)
            else:
                conn = await open_connection(
                    self._db_path,
                    wal_mode=self._config.wal_mode,
                    connection_timeout=self._config.connection_timeout,
                )
                self._write_lock = asyncio.Lock()

            schema = (Path(__file__).parent / "schema.sql").read_text()
            await conn.executescript(schema)
            await conn.commit()

        self._conn = conn
        self._logger.info("store_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """Release the connection. Pool-owned connections stay open."""
        if self._conn is None:
            return
        if self._pool is None:
            await self._conn.close()
        self._conn = None

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("Store is not initialized. Call initialize() first.")
        return self._conn

    def _lock(self) -> asyncio.Lock:
        if self._write_lock is None:
            raise StoreError("Store is not initialized. Call initialize() first.")
        return self._write_lock

    def _publish(self, event: AgentLoopEvent, payload: dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event, payload)

    # ── Session Methods ────────────────────────────────────────────────────────

    async def create_session(
        self,
        title: str = "",
        *,
        parent_session_id: str | None = None,
        id: str | None = None,
    ) -> Session:
        """
        Insert a new session row.

        Args:
            title: Human-readable title. Usually filled in later by title generation.
            parent_session_id: Owning session for task sub-sessions.
            id: Explicit session ID. A ``sess_``-prefixed ULID is generated when omitted.

        Raises:
            DuplicateIDError: If a session with this ID already exists.
        """
        conn = self._conn_or_raise()
        session_id = id or make_id("sess")
        now = now_ms()
        async with self._lock():
            try:
                await conn.execute(
                    """
                    INSERT INTO sessions (id, parent_session_id, title, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (session_id, parent_session_id, title, now, now),
                )
                await conn.commit()
            except aiosqlite.IntegrityError as exc:
                await conn.rollback()
                raise DuplicateIDError(session_id) from exc
            except aiosqlite.Error as exc:
                raise StoreError(f"failed to create session: {exc}") from exc

        session = Session(
            id=session_id,
            parent_session_id=parent_session_id,
            title=title,
            created_at=now,
            updated_at=now,
        )
        self._publish(AgentLoopEvent.SESSION_CREATED, {"session_id": session_id, "title": title})
        return session

    async def get_session(self, session_id: str) -> Session:
        """
        Fetch a session by ID.

        Raises:
            SessionNotFoundError: If no session with this ID exists.
        """
        conn = self._conn_or_raise()
        with _wrap("get session"):
            async with conn.execute(
                "SELECT * FROM sessions WHERE id = ?", (session_id,)
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            raise SessionNotFoundError(session_id)
        return self._row_to_session(row)

    async def save_session(self, session: Session) -> Session:
        """
        Overwrite a session row with *session*, bumping ``updated_at``.

        Returns:
            A copy of *session* carrying the new ``updated_at``.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        conn = self._conn_or_raise()
        updated = session.model_copy(update={"updated_at": max(now_ms(), session.updated_at)})
        async with self._lock():
            with _wrap("save session"):
                cursor = await conn.execute(
                    """
                    UPDATE sessions SET
                        parent_session_id = ?, title = ?, prompt_tokens = ?,
                        completion_tokens = ?, context_tokens = ?, cost = ?,
                        summary = ?, summarized_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        updated.parent_session_id,
                        updated.title,
                        updated.prompt_tokens,
                        updated.completion_tokens,
                        updated.context_tokens,
                        updated.cost,
                        updated.summary,
                        updated.summarized_at,
                        updated.updated_at,
                        updated.id,
                    ),
                )
                await conn.commit()
        if cursor.rowcount == 0:
            raise SessionNotFoundError(session.id)

        self._publish(
            AgentLoopEvent.SESSION_UPDATED, {"session_id": updated.id, "title": updated.title}
        )
        return updated

    async def rename_session(self, session_id: str, title: str) -> Session:
        """Set only the title, leaving counters untouched by a concurrent run intact."""
        conn = self._conn_or_raise()
        async with self._lock():
            with _wrap("rename session"):
                cursor = await conn.execute(
                    "UPDATE sessions SET title = ?, updated_at = ? WHERE id = ?",
                    (title, now_ms(), session_id),
                )
                await conn.commit()
        if cursor.rowcount == 0:
            raise SessionNotFoundError(session_id)
        self._publish(AgentLoopEvent.SESSION_UPDATED, {"session_id": session_id, "title": title})
        return await self.get_session(session_id)

    async def record_usage(
        self,
        session_id: str,
        *,
        prompt_tokens: int,
        completion_tokens: int,
        context_tokens: int,
        cost: float,
    ) -> Session:
        """
        Add one call's usage to the session counters in a single UPDATE.

        ``prompt_tokens``, ``completion_tokens`` and ``cost`` are added to the
        stored totals; ``context_tokens`` replaces the stored value.
        """
        conn = self._conn_or_raise()
        async with self._lock():
            with _wrap("record usage"):
                cursor = await conn.execute(
                    """
                    UPDATE sessions SET
                        prompt_tokens = prompt_tokens + ?,
                        completion_tokens = completion_tokens + ?,
                        context_tokens = ?,
                        cost = cost + ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (prompt_tokens, completion_tokens, context_tokens, cost, now_ms(), session_id),
                )
                await conn.commit()
        if cursor.rowcount == 0:
            raise SessionNotFoundError(session_id)
        session = await self.get_session(session_id)
        self._publish(
            AgentLoopEvent.SESSION_UPDATED, {"session_id": session_id, "title": session.title}
        )
        return session

    async def set_summary(
        self, session_id: str, summary: str, summarized_at: int, *, context_tokens: int
    ) -> Session:
        """Install a new history summary and reset ``context_tokens`` to its size."""
        conn = self._conn_or_raise()
        async with self._lock():
            with _wrap("set summary"):
                cursor = await conn.execute(
                    """
                    UPDATE sessions SET
                        summary = ?, summarized_at = ?, context_tokens = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (summary, summarized_at, context_tokens, now_ms(), session_id),
                )
                await conn.commit()
        if cursor.rowcount == 0:
            raise SessionNotFoundError(session_id)
        session = await self.get_session(session_id)
        self._publish(
            AgentLoopEvent.SESSION_UPDATED, {"session_id": session_id, "title": session.title}
        )
        return session

    async def list_sessions(
        self,
        *,
        parent_session_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Session]:
        """
        List sessions, newest first.

        Args:
            parent_session_id: Only return sub-sessions of this session.
            limit: Maximum number of sessions to return.
            offset: Number of sessions to skip.
        """
        conn = self._conn_or_raise()
        where = ""
        params: list[Any] = []
        if parent_session_id is not None:
            where = "WHERE parent_session_id = ?"
            params.append(parent_session_id)
        params.extend([limit, offset])

        with _wrap("list sessions"):
            async with conn.execute(
                f"SELECT * FROM sessions {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                params,
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_session(r) for r in rows]

    async def delete_session(self, session_id: str) -> None:
        """Delete a session and all of its messages."""
        session = await self.get_session(session_id)
        conn = self._conn_or_raise()
        async with self._lock():
            with _wrap("delete session"):
                await conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
                await conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
                await conn.commit()
        self._logger.info("session_deleted", session_id=session_id)
        self._publish(
            AgentLoopEvent.SESSION_DELETED, {"session_id": session_id, "title": session.title}
        )

    # ── Message Methods ────────────────────────────────────────────────────────

    async def create_message(
        self,
        session_id: str,
        role: MessageRole,
        parts: list[ContentPart] | None = None,
        *,
        model: str | None = None,
    ) -> Message:
        """
        Append a message to a session.

        User and tool messages are complete the moment they are written, so
        they are given a ``stop`` finish part when the caller did not supply one.

        Raises:
            SessionNotFoundError: If *session_id* does not exist.
            StoreError: For any other database failure.
        """
        if role not in _ROLES:
            raise ValueError(f"invalid message role: {role!r}")
        conn = self._conn_or_raise()
        parts = list(parts or [])
        if role in ("user", "tool") and not any(isinstance(p, FinishPart) for p in parts):
            parts.append(FinishPart(reason=FinishReason.STOP))

        async with self._lock():
            with _wrap("create message"):
                async with conn.execute(
                    "SELECT summarized_at FROM sessions WHERE id = ?", (session_id,)
                ) as cursor:
                    session_row = await cursor.fetchone()
                if session_row is None:
                    raise SessionNotFoundError(session_id)
                async with conn.execute(
                    "SELECT MAX(created_at) FROM messages WHERE session_id = ?", (session_id,)
                ) as cursor:
                    last_row = await cursor.fetchone()

                last_created = last_row[0] if last_row and last_row[0] is not None else 0
                created_at = max(
                    now_ms(), last_created + 1, (session_row["summarized_at"] or 0) + 1
                )
                message = Message(
                    id=make_id("msg"),
                    session_id=session_id,
                    role=role,
                    parts=parts,
                    model=model,
                    created_at=created_at,
                    updated_at=created_at,
                )
                finish = message.finish_part
                message.finished_at = finish.time if finish is not None else None

                try:
                    await conn.execute(
                        """
                        INSERT INTO messages
                            (id, session_id, role, parts, model,
                             created_at, updated_at, finished_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            message.id,
                            session_id,
                            role,
                            _PARTS.dump_json(message.parts).decode(),
                            model,
                            message.created_at,
                            message.updated_at,
                            message.finished_at,
                        ),
                    )
                except aiosqlite.IntegrityError as exc:
                    await conn.rollback()
                    raise DuplicateIDError(message.id) from exc
                await conn.execute(
                    """
                    UPDATE sessions SET message_count = message_count + 1, updated_at = ?
                    WHERE id = ?
                    """,
                    (now_ms(), session_id),
                )
                await conn.commit()

        self._publish(
            AgentLoopEvent.MESSAGE_CREATED,
            {"session_id": session_id, "message_id": message.id, "role": role},
        )
        return message

    async def update_message(self, message: Message) -> Message:
        """
        Overwrite a stored message's parts, model and finish time by id.

        Idempotent: writing the same message twice leaves the same row.
        ``updated_at`` and ``finished_at`` are set on *message* in place.

        Raises:
            MessageNotFoundError: If the message was never created.
        """
        conn = self._conn_or_raise()
        finish = message.finish_part
        message.finished_at = finish.time if finish is not None else None
        message.updated_at = max(now_ms(), message.updated_at)
        async with self._lock():
            with _wrap("update message"):
                cursor = await conn.execute(
                    """
                    UPDATE messages SET parts = ?, model = ?, updated_at = ?, finished_at = ?
                    WHERE id = ?
                    """,
                    (
                        _PARTS.dump_json(message.parts).decode(),
                        message.model,
                        message.updated_at,
                        message.finished_at,
                        message.id,
                    ),
                )
                await conn.commit()
        if cursor.rowcount == 0:
            raise MessageNotFoundError(message.id)

        self._publish(
            AgentLoopEvent.MESSAGE_UPDATED,
            {"session_id": message.session_id, "message_id": message.id, "role": message.role},
        )
        return message

    async def get_message(self, message_id: str) -> Message:
        """
        Fetch a message by ID.

        Raises:
            MessageNotFoundError: If no message with this ID exists.
        """
        conn = self._conn_or_raise()
        with _wrap("get message"):
            async with conn.execute(
                "SELECT * FROM messages WHERE id = ?", (message_id,)
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            raise MessageNotFoundError(message_id)
        return self._row_to_message(row)

    async def list_messages(self, session_id: str) -> list[Message]:
        """Return all messages of a session in id order."""
        conn = self._conn_or_raise()
        with _wrap("list messages"):
            async with conn.execute(
                "SELECT * FROM messages WHERE session_id = ? ORDER BY id ASC", (session_id,)
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_message(r) for r in rows]

    async def list_messages_after(self, session_id: str, ts: int) -> list[Message]:
        """Return messages with ``created_at > ts`` in id order."""
        conn = self._conn_or_raise()
        with _wrap("list messages after timestamp"):
            async with conn.execute(
                """
                SELECT * FROM messages WHERE session_id = ? AND created_at > ?
                ORDER BY id ASC
                """,
                (session_id, ts),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_message(r) for r in rows]

    async def delete_message(self, message_id: str) -> None:
        """Delete one message and decrement its session's message count."""
        message = await self.get_message(message_id)
        conn = self._conn_or_raise()
        async with self._lock():
            with _wrap("delete message"):
                await conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
                await conn.execute(
                    """
                    UPDATE sessions SET message_count = MAX(message_count - 1, 0), updated_at = ?
                    WHERE id = ?
                    """,
                    (now_ms(), message.session_id),
                )
                await conn.commit()
        self._publish(
            AgentLoopEvent.MESSAGE_DELETED,
            {"session_id": message.session_id, "message_id": message_id, "role": message.role},
        )

    async def delete_session_messages(self, session_id: str) -> int:
        """Delete every message of a session. Returns the number removed."""
        messages = await self.list_messages(session_id)
        conn = self._conn_or_raise()
        async with self._lock():
            with _wrap("delete session messages"):
                await conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
                await conn.execute(
                    "UPDATE sessions SET message_count = 0, updated_at = ? WHERE id = ?",
                    (now_ms(), session_id),
                )
                await conn.commit()
        for message in messages:
            self._publish(
                AgentLoopEvent.MESSAGE_DELETED,
                {"session_id": session_id, "message_id": message.id, "role": message.role},
            )
        return len(messages)

    # ── Row converters ─────────────────────────────────────────────────────────

    def _row_to_session(self, row: aiosqlite.Row) -> Session:
        return Session(
            id=row["id"],
            parent_session_id=row["parent_session_id"],
            title=row["title"],
            message_count=row["message_count"],
            prompt_tokens=row["prompt_tokens"],
            completion_tokens=row["completion_tokens"],
            context_tokens=row["context_tokens"],
            cost=row["cost"],
            summary=row["summary"],
            summarized_at=row["summarized_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        return Message(
            id=row["id"],
            session_id=row["session_id"],
            role=row["role"],
            parts=_PARTS.validate_json(row["parts"]),
            model=row["model"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            finished_at=row["finished_at"],
        )
