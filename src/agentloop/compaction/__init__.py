"""agentloop history compaction."""

from agentloop.compaction.engine import CompactionEngine

__all__ = ["CompactionEngine"]
