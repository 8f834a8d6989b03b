"""Shared fixtures for agentloop tests."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from agentloop.agent.orchestrator import Agent
from agentloop.events.bus import AgentLoopEvent, EventBus
from agentloop.models.config import AgentLoopConfig, StoreConfig
from agentloop.store.pool import StorePool
from agentloop.store.sqlite import SessionStore
from agentloop.tools.registry import ToolRegistry
from tests.fakes import DenyTool, EchoTool, FailingTool, ScriptedProvider, SlowTool


@pytest.fixture
def config(tmp_path):
    """AgentLoopConfig with a temp database path."""
    return AgentLoopConfig(store=StoreConfig(db_path=str(tmp_path / "test.db")))


@pytest_asyncio.fixture
async def pool(config):
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[AgentLoopEvent, dict[str, Any]]] = []

    def _collect(event: AgentLoopEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest_asyncio.fixture
async def store(config, pool, event_bus):
    """Initialized SessionStore backed by a temp SQLite database (pool-managed)."""
    s = SessionStore(config.store, pool=pool, event_bus=event_bus)
    await s.initialize()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def session_id(store):
    """A pre-created session ID in the store."""
    session = await store.create_session()
    return session.id


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def title_provider():
    return ScriptedProvider(reply="Friendly\ngreeting  ")


@pytest.fixture
def slow_tool():
    return SlowTool()


@pytest.fixture
def echo_tool():
    return EchoTool()


@pytest.fixture
def registry(echo_tool, slow_tool):
    return ToolRegistry([echo_tool, DenyTool(), FailingTool(), slow_tool])


@pytest_asyncio.fixture
async def agent(store, provider, registry, config, title_provider, event_bus):
    """Agent wired to the scripted providers. Closed after each test."""
    a = Agent(
        store,
        provider,
        registry,
        config,
        title_provider=title_provider,
        event_bus=event_bus,
    )
    yield a
    await a.close()


def events_of(bus: EventBus, event: AgentLoopEvent) -> list[dict[str, Any]]:
    """Payloads of every collected *event*."""
    return [payload for name, payload in bus.collected if name == event]  # type: ignore[attr-defined]
