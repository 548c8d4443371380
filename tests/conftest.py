"""Pytest configuration and shared fixtures for the test suite."""

import threading
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest

from switchboard.orchestration.context import ContextManager
from switchboard.storage.memory import InMemoryContextStore


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def context_manager(clock: FakeClock) -> ContextManager:
    """Create a context manager with a 60 second window and history of 5."""
    return ContextManager(expiration_seconds=60, max_history_size=5, clock=clock)


@pytest.fixture
def memory_store() -> InMemoryContextStore:
    """Create an empty in-memory snapshot store."""
    return InMemoryContextStore()


def make_agent(
    name: str,
    response: Optional[Dict[str, Any]] = None,
    capabilities: Optional[Dict[str, Any]] = None,
) -> MagicMock:
    """Create a mock agent answering every request with ``response``."""
    agent = MagicMock()
    agent.get_agent_name.return_value = name
    agent.get_capabilities.return_value = capabilities or {}
    agent.process_request.return_value = (
        response
        if response is not None
        else {"status": "success", "message": f"{name} handled it", "agent": name}
    )
    return agent


class ScriptedAgent:
    """Agent exposing nothing but ``process_request``.

    Answers with ``response`` and records every call as ``(request, context)``.
    """

    def __init__(self, name: str, response: Optional[Dict[str, Any]] = None) -> None:
        self.name = name
        self.response = (
            response
            if response is not None
            else {"status": "success", "message": f"{name} handled it", "agent": name}
        )
        self.calls: List[Tuple[Dict[str, Any], Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def process_request(self, request: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self.calls.append((request, context))
        return self.response


def make_registry(candidates: Dict[str, Any], extra_agents: Optional[Dict[str, Any]] = None) -> MagicMock:
    """Create a mock registry.

    Args:
        candidates: ``{name: (agent, score)}`` returned by specialization lookup
        extra_agents: Agents only reachable through ``get_agent``
    """
    agents = {name: agent for name, (agent, _) in candidates.items()}
    agents.update(extra_agents or {})

    registry = MagicMock()
    registry.find_agents_by_specialization.return_value = {
        name: {"agent": agent, "score": score} for name, (agent, score) in candidates.items()
    }
    registry.get_agent.side_effect = agents.get
    return registry


@pytest.fixture
def agent_builder() -> Any:
    """Return the mock agent builder."""
    return make_agent


@pytest.fixture
def registry_builder() -> Any:
    """Return the mock registry builder."""
    return make_registry


@pytest.fixture
def plain_agent_builder() -> Any:
    """Return the builder for agents that only implement process_request."""
    return ScriptedAgent
