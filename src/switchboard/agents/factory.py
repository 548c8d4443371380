"""Agent factory for building agents from registered types.

Agent types map a type name to a class (or any callable returning an
agent). The orchestrator uses :meth:`AgentFactory.create_and_register_agent`
as a fallback when a delegation target is not registered yet, so type names
are usually the same as the agent names they produce.
"""

import inspect
from typing import Any, Callable, Dict, List, Optional

from switchboard.agents.errors import AgentNotFoundError, AgentRegistrationError
from switchboard.agents.registry import AgentRegistry
from switchboard.core.protocols import RegistrableAgent
from switchboard.observability.logging import get_logger

logger = get_logger(__name__)

AgentConstructor = Callable[..., RegistrableAgent]


class AgentFactory:
    """Create agents by type name and optionally register them.

    Example:
        >>> factory = AgentFactory(registry)
        >>> factory.register_agent_type("MembershipAgent", MembershipAgent)
        >>> agent = factory.create_and_register_agent("MembershipAgent")
        >>> registry.has_agent("MembershipAgent")
        True
    """

    def __init__(self, registry: Optional[AgentRegistry] = None) -> None:
        """Initialize the factory.

        Args:
            registry: Registry used by :meth:`create_and_register_agent`
        """
        self._registry = registry
        self._agent_types: Dict[str, AgentConstructor] = {}

    def register_agent_type(self, agent_type: str, constructor: AgentConstructor) -> None:
        """Make an agent type available to the factory.

        Raises:
            AgentRegistrationError: If the constructor is not callable or is
                an abstract class
        """
        self.validate_agent_class(agent_type, constructor)
        self._agent_types[agent_type] = constructor

    def get_available_agent_types(self) -> List[str]:
        return list(self._agent_types)

    @staticmethod
    def validate_agent_class(agent_type: str, constructor: Any) -> bool:
        if not callable(constructor):
            raise AgentRegistrationError(agent_type, "constructor is not callable")
        if inspect.isclass(constructor) and inspect.isabstract(constructor):
            raise AgentRegistrationError(agent_type, f"{constructor.__name__} is abstract")
        return True

    def create_agent_by_type(self, agent_type: str, **kwargs: Any) -> RegistrableAgent:
        """Instantiate an agent of a registered type.

        Args:
            agent_type: Registered type name
            **kwargs: Passed to the constructor

        Raises:
            AgentNotFoundError: If the type is unknown
            AgentRegistrationError: If the constructor returns something that
                is not an agent
        """
        constructor = self._agent_types.get(agent_type)
        if constructor is None:
            raise AgentNotFoundError(agent_type)

        agent = constructor(**kwargs)
        if not isinstance(agent, RegistrableAgent):
            raise AgentRegistrationError(agent_type, "constructor did not return an agent")

        logger.debug("agent_created", agent_type=agent_type, agent=agent.get_agent_name())
        return agent

    def create_and_register_agent(self, agent_type: str, **kwargs: Any) -> RegistrableAgent:
        """Instantiate an agent and add it to the registry.

        Raises:
            AgentRegistrationError: If the factory has no registry, or the
                registry rejects the agent
            AgentNotFoundError: If the type is unknown
        """
        if self._registry is None:
            raise AgentRegistrationError(agent_type, "factory has no registry")

        agent = self.create_agent_by_type(agent_type, **kwargs)
        self._registry.register(agent)
        return agent
