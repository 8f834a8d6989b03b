"""
Shared connection pool for SessionStore.

A single ``StorePool`` instance manages one ``aiosqlite.Connection`` per
database path. All ``SessionStore`` objects pointing at the same path share
that connection and its write lock, so concurrent runs on different sessions
never fight over SQLite's single-writer lock.

Usage::

    pool = StorePool()

    store_a = SessionStore(config, pool=pool)
    store_b = SessionStore(config, pool=pool)   # same DB path -> same connection

    await store_a.initialize()   # opens the connection
    await store_b.initialize()   # reuses existing connection

    await pool.close_all()       # close all managed connections once at shutdown
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiosqlite
import structlog

_logger = structlog.get_logger("agentloop.store.pool")


def resolve_db_path(db_path: str) -> str:
    """Expand ``~`` and resolve *db_path*. ``:memory:`` is returned unchanged."""
    if db_path == ":memory:":
        return db_path
    return str(Path(db_path).expanduser().resolve())


async def open_connection(
    db_path: str,
    *,
    wal_mode: bool = True,
    connection_timeout: float = 30.0,
) -> aiosqlite.Connection:
    """Open a configured connection: row factory, journal mode and foreign keys."""
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(db_path, timeout=connection_timeout)
    try:
        conn.row_factory = aiosqlite.Row
        if wal_mode and db_path != ":memory:":
            await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute("PRAGMA synchronous=NORMAL")
    except Exception:
        await conn.close()
        raise
    return conn


class StorePool:
    """
    Process-scoped registry of open ``aiosqlite.Connection`` objects.

    Only safe to use from a single asyncio event loop.

    For each unique resolved database path the pool holds exactly one
    connection and one ``asyncio.Lock`` that ``SessionStore`` uses to
    serialise write transactions.
    """

    def __init__(self) -> None:
        self._connections: dict[str, aiosqlite.Connection] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._open_locks: dict[str, asyncio.Lock] = {}

    # ── Public API ─────────────────────────────────────────────────────────────

    async def acquire(
        self,
        db_path: str,
        *,
        wal_mode: bool = True,
        connection_timeout: float = 30.0,
    ) -> aiosqlite.Connection:
        """
        Return the shared connection for *db_path*, opening it if needed.

        Args:
            db_path: Path to the database file (``~`` is expanded).
            wal_mode: Enable WAL journal mode on first open.
            connection_timeout: SQLite busy timeout in seconds.
        """
        resolved = resolve_db_path(db_path)

        if resolved in self._connections:
            return self._connections[resolved]

        lock = self._open_locks.setdefault(resolved, asyncio.Lock())
        async with lock:
            # Another coroutine may have opened it while we waited
            if resolved in self._connections:
                return self._connections[resolved]

            conn = await open_connection(
                resolved, wal_mode=wal_mode, connection_timeout=connection_timeout
            )
            self._connections[resolved] = conn
            self._write_locks[resolved] = asyncio.Lock()
            _logger.debug("pool_connection_opened", db_path=resolved)
            return conn

    def write_lock(self, db_path: str) -> asyncio.Lock:
        """
        Return the write-serialisation lock for *db_path*.

        Raises ``KeyError`` if called before ``acquire()`` for this path.
        """
        return self._write_locks[resolve_db_path(db_path)]

    async def close_path(self, db_path: str) -> None:
        """Close and remove the connection for a single path."""
        resolved = resolve_db_path(db_path)
        conn = self._connections.pop(resolved, None)
        self._write_locks.pop(resolved, None)
        self._open_locks.pop(resolved, None)
        if conn is not None:
            await conn.close()
            _logger.debug("pool_connection_closed", db_path=resolved)

    async def close_all(self) -> None:
        """Close every connection managed by this pool."""
        for path in list(self._connections):
            await self.close_path(path)

    @staticmethod
    def default() -> StorePool:
        """
        Return the process-level default pool, created lazily on first access.

        Tests should create their own ``StorePool()`` for isolation.
        """
        global _default_pool
        if _default_pool is None:
            _default_pool = StorePool()
        return _default_pool


_default_pool: StorePool | None = None
