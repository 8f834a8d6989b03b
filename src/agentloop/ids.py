"""Sortable identifier generation."""

from __future__ import annotations

import threading

from ulid import ULID

_lock = threading.Lock()
_last: int = 0


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    IDs are monotonic within the process: a later call always sorts after an
    earlier one, even when both fall in the same millisecond. Message IDs rely
    on this to define replay order.

    Args:
        prefix: Short prefix for readability (e.g. ``"msg"``, ``"sess"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    global _last
    with _lock:
        value = int(ULID())
        if value <= _last:
            value = _last + 1
        _last = value
    return f"{prefix}_{ULID.from_int(value)}"
