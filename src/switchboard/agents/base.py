"""Base abstract class for switchboard agents.

This module defines the BaseAgent abstract class that concrete agents extend.
It provides identity, capability bookkeeping, the component-based
specialization score and helpers for building response envelopes.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from switchboard.observability.logging import get_logger
from switchboard.orchestration.responses import (
    DelegatingResponse,
    ErrorResponse,
    SuccessResponse,
    to_envelope,
)

MAX_SPECIALIZATION_SCORE = 100.0


class BaseAgent(ABC):
    """Abstract base class for agents.

    Subclasses set ``name`` and ``description``, declare capabilities in
    :meth:`register_capabilities` and implement :meth:`process_request`.
    The specialization score is the sum of four component scores (intent,
    entity relevance, capability match, context continuity), passed through
    :meth:`apply_score_multipliers` and clamped to 0-100. Each component
    returns 0 unless overridden.

    Class Attributes:
        name: Agent name used as its registry key
        description: Human-readable summary

    Example:
        >>> class MembershipAgent(BaseAgent):
        ...     name = "MembershipAgent"
        ...     def register_capabilities(self) -> None:
        ...         self.add_capability("membership")
        ...     def calculate_intent_match_score(self, request):
        ...         return 30.0 if "membership" in request.get("message", "") else 0.0
        ...     def process_request(self, request, context):
        ...         return self.success_response("Found 3 memberships", data={"count": 3})
        >>> MembershipAgent().get_specialization_score({"message": "list membership plans"})
        30.0
    """

    name: str = ""
    description: str = ""

    def __init__(self, logger: Optional[Any] = None) -> None:
        """Initialize the agent and register its capabilities.

        Args:
            logger: Optional logger; defaults to a structlog logger bound to
                the agent name
        """
        self._capabilities: Dict[str, Dict[str, Any]] = {}
        self._logger = logger or get_logger(__name__).bind(agent=self.get_agent_name())
        self.register_capabilities()

    def get_agent_name(self) -> str:
        return self.name or type(self).__name__

    def get_agent_description(self) -> str:
        return self.description

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def get_specialization_score(self, request: Dict[str, Any]) -> float:
        """Score how well this agent fits the request, between 0 and 100."""
        score = (
            self.calculate_intent_match_score(request)
            + self.calculate_entity_relevance_score(request)
            + self.calculate_capability_match_score(request)
            + self.calculate_context_continuity_score(request)
        )
        score = self.apply_score_multipliers(score, request)
        return max(0.0, min(MAX_SPECIALIZATION_SCORE, float(score)))

    def calculate_intent_match_score(self, request: Dict[str, Any]) -> float:
        return 0.0

    def calculate_entity_relevance_score(self, request: Dict[str, Any]) -> float:
        return 0.0

    def calculate_capability_match_score(self, request: Dict[str, Any]) -> float:
        return 0.0

    def calculate_context_continuity_score(self, request: Dict[str, Any]) -> float:
        return 0.0

    def apply_score_multipliers(self, score: float, request: Dict[str, Any]) -> float:
        return score

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    @abstractmethod
    def process_request(self, request: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        """Handle a routed request.

        Args:
            request: The caller's request, enriched with ``context`` and
                ``conversation_id`` by the orchestrator
            context: Call context (conversation_id, request_id, timestamp and,
                for delegated or aggregated calls, ``is_delegation`` /
                ``is_aggregation``)

        Returns:
            A response envelope dict
        """
        pass

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def register_capabilities(self) -> None:
        """Hook for subclasses to declare capabilities at construction."""

    def add_capability(self, capability: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self._capabilities[capability] = dict(metadata or {})

    def remove_capability(self, capability: str) -> None:
        self._capabilities.pop(capability, None)

    def has_capability(self, capability: str) -> bool:
        return capability in self._capabilities

    def get_capabilities(self) -> Dict[str, Dict[str, Any]]:
        """Return capability name to metadata, as a copy."""
        return {name: dict(meta) for name, meta in self._capabilities.items()}

    # ------------------------------------------------------------------
    # Envelope helpers
    # ------------------------------------------------------------------

    def success_response(self, message: str, data: Any = None, **extra: Any) -> Dict[str, Any]:
        return to_envelope(
            SuccessResponse(message=message, agent=self.get_agent_name(), data=data, **extra)
        )

    def error_response(self, message: str, **extra: Any) -> Dict[str, Any]:
        return to_envelope(ErrorResponse(message=message, agent=self.get_agent_name(), **extra))

    def delegate(self, delegate_to: str, reason: str, message: str = "", **extra: Any) -> Dict[str, Any]:
        """Build a response asking the orchestrator to hand over to ``delegate_to``."""
        return to_envelope(
            DelegatingResponse(
                message=message or f"Delegating to {delegate_to}",
                agent=self.get_agent_name(),
                delegate_to=delegate_to,
                delegation_reason=reason,
                **extra,
            )
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.get_agent_name()!r})"
