"""agentloop persistence layer."""

from agentloop.store.pool import StorePool
from agentloop.store.sqlite import (
    DuplicateIDError,
    MessageNotFoundError,
    SessionNotFoundError,
    SessionStore,
    StoreError,
)

__all__ = [
    "DuplicateIDError",
    "MessageNotFoundError",
    "SessionNotFoundError",
    "SessionStore",
    "StoreError",
    "StorePool",
]
