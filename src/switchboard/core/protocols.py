"""Core protocols for cross-layer abstractions.

This module defines the structural contracts the orchestrator consumes, so
that it never depends on the concrete agent, registry or factory classes in
``switchboard.agents``. Any object with the right methods satisfies them.
"""

from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable


@runtime_checkable
class Agent(Protocol):
    """A unit of capability the orchestrator can route a request to.

    ``process_request`` is the only method the orchestrator relies on. It
    returns a response dict with at least ``status`` (``success``, ``error``
    or ``delegating``), ``message`` and ``agent``; any further fields are
    passed through untouched.

    An agent may also expose ``get_capabilities()``. When it does, entity
    types found in the conversation that match a capability name boost the
    agent's score; when it does not, the agent is scored without that boost.
    """

    def process_request(self, request: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]: ...


@runtime_checkable
class RegistrableAgent(Agent, Protocol):
    """An agent the bundled registry can store and score.

    ``get_capabilities()`` stays optional here too.
    """

    def get_agent_name(self) -> str: ...

    def get_specialization_score(self, request: Dict[str, Any]) -> float: ...


class AgentLookup(Protocol):
    """Registry operations used during discovery and delegation.

    The implementation shipped with this package is
    ``switchboard.agents.registry.AgentRegistry``. A registry may also expose
    a ``version`` attribute that changes whenever agents are added or
    removed; the orchestrator drops its cached selections when it does.
    """

    def find_agents_by_specialization(
        self, request: Dict[str, Any], min_score: float = 0.0
    ) -> Mapping[str, Any]:
        """Return ``{agent_name: {"agent": agent, "score": float}}``, best first.

        An empty mapping means no agent matched.
        """
        ...

    def get_agent(self, agent_name: str) -> Optional[Agent]:
        """Return the named agent, or None."""
        ...


class AgentBuilder(Protocol):
    """Factory fallback used when a delegate is not registered yet."""

    def create_and_register_agent(self, agent_type: str, **kwargs: Any) -> Agent: ...


class OrchestrationLogger(Protocol):
    """Minimal logger accepted by the orchestrator.

    structlog's bound loggers satisfy this protocol directly.
    """

    def info(self, event: str, **kwargs: Any) -> Any: ...

    def warning(self, event: str, **kwargs: Any) -> Any: ...

    def error(self, event: str, **kwargs: Any) -> Any: ...
