"""Session data model."""

from __future__ import annotations

from pydantic import BaseModel


class Session(BaseModel):
    """
    A persistent conversation thread.

    ``prompt_tokens``, ``completion_tokens`` and ``cost`` are cumulative and
    only ever grow. ``context_tokens`` is the number of tokens the
    conversation occupied in the model's window after the last completed
    call; it drives the compaction trigger and is reset when a summary
    replaces the history.

    When ``summary`` is set, ``summarized_at`` is the history boundary:
    messages created at or before it are never resent to the model.
    """

    id: str
    parent_session_id: str | None = None
    title: str = ""
    message_count: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    context_tokens: int = 0
    cost: float = 0.0
    summary: str | None = None
    summarized_at: int | None = None
    """Unix millisecond timestamp of the last compaction."""
    created_at: int = 0
    updated_at: int = 0

    @property
    def has_summary(self) -> bool:
        return bool(self.summary) and bool(self.summarized_at)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens
