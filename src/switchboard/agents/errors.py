"""Custom exceptions for the agents package.

This module defines the exception hierarchy for agent registration and
lookup errors.
"""


class AgentError(Exception):
    """Base exception for all agent-related errors.

    Attributes:
        code: Machine-readable error code
        message: Human-readable error message
    """

    def __init__(self, message: str, code: str) -> None:
        """Initialize agent error.

        Args:
            message: Human-readable error description
            code: Machine-readable error code
        """
        super().__init__(message)
        self.message = message
        self.code = code


class AgentNotFoundError(AgentError):
    """Raised when an agent or agent type cannot be found."""

    def __init__(self, agent_name: str) -> None:
        """Initialize agent not found error.

        Args:
            agent_name: The name of the agent that was not found
        """
        super().__init__(
            message=f"Agent '{agent_name}' not found",
            code="agent_not_found",
        )
        self.agent_name = agent_name


class AgentRegistrationError(AgentError):
    """Raised when an agent or agent type cannot be registered."""

    def __init__(self, agent_name: str, reason: str) -> None:
        super().__init__(
            message=f"Cannot register agent '{agent_name}': {reason}",
            code="agent_registration_failed",
        )
        self.agent_name = agent_name
        self.reason = reason
