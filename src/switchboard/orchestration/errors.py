"""Exceptions raised inside the orchestration pipeline.

These never escape ``AgentOrchestrator.process_user_request``: the
orchestrator converts them to error envelopes at its boundary, using
``message`` as the envelope text.
"""

from typing import Any, Dict, Optional


class OrchestrationError(Exception):
    """Base exception for orchestration failures.

    Attributes:
        message: Human-readable error message, surfaced in the envelope
        code: Machine-readable error code
    """

    def __init__(self, message: str, code: str) -> None:
        """Initialize orchestration error.

        Args:
            message: Human-readable error description
            code: Machine-readable error code
        """
        super().__init__(message)
        self.message = message
        self.code = code


class RequestValidationError(OrchestrationError):
    """Raised when an inbound request is malformed."""

    def __init__(self, reason: str) -> None:
        super().__init__(message=reason, code="invalid_request")
        self.reason = reason


class NoSuitableAgentError(OrchestrationError):
    """Raised when the registry returns no candidate for a request."""

    def __init__(self) -> None:
        super().__init__(
            message="No suitable agent found for this request",
            code="no_suitable_agent",
        )


class DelegationError(OrchestrationError):
    """Raised when a delegation hop cannot be completed.

    Attributes:
        from_agent: Agent that asked to delegate
        to_agent: Requested delegate, if any
        original_response: The delegating response that triggered the hop
    """

    def __init__(
        self,
        message: str,
        from_agent: Optional[str] = None,
        to_agent: Optional[str] = None,
        original_response: Optional[Dict[str, Any]] = None,
        code: str = "delegation_failed",
    ) -> None:
        super().__init__(message=message, code=code)
        self.from_agent = from_agent
        self.to_agent = to_agent
        self.original_response = original_response


class AgentTimeoutError(OrchestrationError):
    """Raised when an agent call exceeds its bounded wait."""

    def __init__(self, agent_name: str, timeout_seconds: float) -> None:
        super().__init__(
            message=f"Agent '{agent_name}' timed out after {timeout_seconds:g}s",
            code="agent_timeout",
        )
        self.agent_name = agent_name
        self.timeout_seconds = timeout_seconds
