"""Orchestration core: message envelope, scoped context and agent routing."""

from switchboard.orchestration.context import (
    ContextManager,
    ContextPriority,
    ContextScope,
    EntityKey,
    TrackedEntity,
)
from switchboard.orchestration.errors import (
    AgentTimeoutError,
    DelegationError,
    NoSuitableAgentError,
    OrchestrationError,
    RequestValidationError,
)
from switchboard.orchestration.orchestrator import AgentCandidate, AgentOrchestrator
from switchboard.orchestration.protocol import BROADCAST_RECIPIENT, Message, MessageType
from switchboard.orchestration.responses import (
    DelegatingResponse,
    ErrorResponse,
    SuccessResponse,
    parse_agent_response,
)

__all__ = [
    "AgentCandidate",
    "AgentOrchestrator",
    "AgentTimeoutError",
    "BROADCAST_RECIPIENT",
    "ContextManager",
    "ContextPriority",
    "ContextScope",
    "DelegatingResponse",
    "DelegationError",
    "EntityKey",
    "ErrorResponse",
    "Message",
    "MessageType",
    "NoSuitableAgentError",
    "OrchestrationError",
    "RequestValidationError",
    "SuccessResponse",
    "TrackedEntity",
    "parse_agent_response",
]
