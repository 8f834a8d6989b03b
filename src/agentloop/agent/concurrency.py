"""
Per-session busy registry, cancellation scopes and the pause gate.

Everything here is used from one asyncio event loop. Check-and-register in
:meth:`ActiveRequests.try_acquire` contains no ``await``, so it is atomic
with respect to other coroutines without an explicit lock.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

COMPACTION_SUFFIX = "-compact"


def uncancel_current_task() -> None:
    """Clear one pending cancellation request on the running task after it was handled."""
    task = asyncio.current_task()
    if task is not None and task.cancelling():
        task.uncancel()


class CancelScope:
    """
    Cancellation handle for one run or compaction.

    ``cancel()`` is idempotent: the first call sets the flag and cancels the
    owning task (interrupting whatever it is awaiting); later calls do
    nothing. Code inside the scope polls :attr:`cancelled` between steps and
    uses it to tell its own cancellation apart from an unrelated one.
    """

    def __init__(self, task: asyncio.Task[object] | None = None) -> None:
        self._event = asyncio.Event()
        self._task = task

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def bind(self, task: asyncio.Task[object]) -> None:
        self._task = task
        if self.cancelled and not task.done():
            task.cancel()

    def cancel(self) -> bool:
        """Request cancellation. Returns False when already cancelled."""
        if self._event.is_set():
            return False
        self._event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True

    async def wait(self) -> None:
        await self._event.wait()


class ActiveRequests:
    """
    Registry of in-flight requests keyed by session id.

    An entry's presence means "busy". Compaction registers under
    :meth:`compaction_key` so it never collides with the ordinary entry.
    """

    def __init__(self) -> None:
        self._requests: dict[str, CancelScope] = {}

    @staticmethod
    def compaction_key(session_id: str) -> str:
        return f"{session_id}{COMPACTION_SUFFIX}"

    def try_acquire(self, key: str, scope: CancelScope) -> bool:
        """Register *scope* under *key* unless the key is already taken."""
        if key in self._requests:
            return False
        self._requests[key] = scope
        return True

    def release(self, key: str, scope: CancelScope) -> bool:
        """Remove *key* only if it still maps to *scope*."""
        if self._requests.get(key) is scope:
            del self._requests[key]
            return True
        return False

    def get(self, key: str) -> CancelScope | None:
        return self._requests.get(key)

    def is_active(self, key: str) -> bool:
        return key in self._requests

    def any_active(self) -> bool:
        return bool(self._requests)

    def keys(self) -> list[str]:
        return list(self._requests)

    def __len__(self) -> int:
        return len(self._requests)


class PauseGate:
    """
    Process-wide reader/writer gate.

    Readers are individual event-processing steps of running turns; the
    writer is an external pauser that needs every run to hold still. A
    waiting writer blocks new readers, and is admitted once the current
    readers finish. Both sides are scoped context managers, so a pause is
    always released when its block exits.

    Steps must not nest: a step waiting behind a pending writer while its
    caller holds another step would never be admitted.
    """

    def __init__(self) -> None:
        self._readers = 0
        self._writer = False
        self._no_readers = asyncio.Event()
        self._no_readers.set()
        self._no_writer = asyncio.Event()
        self._no_writer.set()

    @property
    def is_paused(self) -> bool:
        return self._writer

    @property
    def active_steps(self) -> int:
        return self._readers

    @asynccontextmanager
    async def step(self) -> AsyncIterator[None]:
        while self._writer:
            await self._no_writer.wait()
        self._readers += 1
        self._no_readers.clear()
        try:
            yield
        finally:
            self._readers -= 1
            if self._readers == 0:
                self._no_readers.set()

    @asynccontextmanager
    async def paused(self) -> AsyncIterator[None]:
        while self._writer:
            await self._no_writer.wait()
        self._writer = True
        self._no_writer.clear()
        try:
            while self._readers:
                await self._no_readers.wait()
            yield
        finally:
            self._writer = False
            self._no_writer.set()
