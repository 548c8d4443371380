"""Agent base class, registry and factory."""

from switchboard.agents.base import BaseAgent
from switchboard.agents.errors import AgentError, AgentNotFoundError, AgentRegistrationError
from switchboard.agents.factory import AgentFactory
from switchboard.agents.registry import AgentRegistry

__all__ = [
    "AgentError",
    "AgentFactory",
    "AgentNotFoundError",
    "AgentRegistrationError",
    "AgentRegistry",
    "BaseAgent",
]
