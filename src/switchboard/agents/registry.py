"""Agent registry for registering and discovering agents.

This module provides the in-memory AgentRegistry used by the orchestrator
to discover scored candidates for a request and to look up delegates by
name. Registration order is preserved and used as the tie-break when two
agents score the same.
"""

import threading
from typing import Any, Dict, Optional

from switchboard.agents.errors import AgentNotFoundError, AgentRegistrationError
from switchboard.core.protocols import RegistrableAgent
from switchboard.observability.logging import get_logger

logger = get_logger(__name__)


class AgentRegistry:
    """Registry for managing and discovering agents.

    Agents are keyed by ``get_agent_name()``. All operations are safe to
    call from several threads.

    Example:
        >>> registry = AgentRegistry()
        >>> registry.register(MembershipAgent())
        >>> candidates = registry.find_agents_by_specialization({"message": "list plans"})
        >>> for name, candidate in candidates.items():
        ...     print(name, candidate["score"])
    """

    def __init__(self) -> None:
        self._agents: Dict[str, RegistrableAgent] = {}
        self._lock = threading.Lock()
        self._version = 0

    def register(self, agent: RegistrableAgent) -> None:
        """Register an agent.

        Args:
            agent: Agent instance to register

        Raises:
            AgentRegistrationError: If the agent has no name or the name is taken
        """
        name = agent.get_agent_name()
        if not name:
            raise AgentRegistrationError(repr(agent), "agent name is empty")

        with self._lock:
            if name in self._agents:
                raise AgentRegistrationError(name, "an agent with this name is already registered")
            self._agents[name] = agent
            self._version += 1

        logger.debug("agent_registered", agent=name)

    def unregister(self, agent_name: str) -> None:
        """Remove an agent from the registry.

        Raises:
            AgentNotFoundError: If the agent is not registered
        """
        with self._lock:
            if agent_name not in self._agents:
                raise AgentNotFoundError(agent_name)
            del self._agents[agent_name]
            self._version += 1

        logger.debug("agent_unregistered", agent=agent_name)

    @property
    def version(self) -> int:
        """Counter bumped by every register and unregister."""
        with self._lock:
            return self._version

    def has_agent(self, agent_name: str) -> bool:
        with self._lock:
            return agent_name in self._agents

    def get_agent(self, agent_name: str) -> Optional[RegistrableAgent]:
        """Return the named agent, or None if it is not registered."""
        with self._lock:
            return self._agents.get(agent_name)

    def get_all_agents(self) -> Dict[str, RegistrableAgent]:
        """Return a copy of name to agent, in registration order."""
        with self._lock:
            return dict(self._agents)

    def find_agents_by_capability(self, capability: str) -> Dict[str, RegistrableAgent]:
        """Return the agents declaring ``capability``, in registration order.

        Agents without ``get_capabilities()`` declare nothing.
        """
        matches = {}
        for name, agent in self.get_all_agents().items():
            get_capabilities = getattr(agent, "get_capabilities", None)
            if callable(get_capabilities) and capability in (get_capabilities() or {}):
                matches[name] = agent
        return matches

    def find_agents_by_specialization(
        self, request: Dict[str, Any], min_score: float = 0.0
    ) -> Dict[str, Dict[str, Any]]:
        """Score every agent against a request.

        Agents whose scoring raises are logged and skipped.

        Args:
            request: The request to score
            min_score: Minimum score for an agent to be returned

        Returns:
            ``{name: {"agent": agent, "score": score}}`` sorted by score,
            highest first; equal scores keep registration order
        """
        candidates = []
        for name, agent in self.get_all_agents().items():
            try:
                score = float(agent.get_specialization_score(request))
            except Exception:
                logger.warning("agent_scoring_failed", agent=name, exc_info=True)
                continue
            if score >= min_score:
                candidates.append((name, {"agent": agent, "score": score}))

        candidates.sort(key=lambda item: item[1]["score"], reverse=True)
        return dict(candidates)

    def find_best_agent_for_request(self, request: Dict[str, Any]) -> Optional[RegistrableAgent]:
        """Return the highest scoring agent, or None if nothing is registered."""
        candidates = self.find_agents_by_specialization(request, min_score=float("-inf"))
        if not candidates:
            return None
        return next(iter(candidates.values()))["agent"]

    def __len__(self) -> int:
        with self._lock:
            return len(self._agents)

    def __contains__(self, agent_name: object) -> bool:
        with self._lock:
            return agent_name in self._agents
