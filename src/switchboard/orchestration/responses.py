"""Response envelopes exchanged with agents and returned to callers.

Agents answer ``process_request`` with a plain dict. The orchestrator branches
on its raw ``status`` and hands the agent's own dict back, so a response whose
other fields do not fit the models below is still routed.
:func:`parse_agent_response` gives agents and callers a typed view. Envelopes the
orchestrator builds itself are produced with :func:`to_envelope`, which
drops unset optional fields.
"""

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

ORCHESTRATOR_AGENT = "orchestrator"


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    message: str = ""
    agent: Optional[str] = None


class SuccessResponse(_Envelope):
    """Successful agent or orchestrator result."""

    status: Literal["success"] = "success"
    data: Any = None
    aggregated_data: Optional[Dict[str, Any]] = None
    individual_responses: Optional[Dict[str, Any]] = None
    delegated_from: Optional[str] = None
    delegation_reason: Optional[str] = None


class ErrorResponse(_Envelope):
    """Failure result.

    Attributes:
        original_response: Response that led to the failure (delegation errors)
        code: Machine-readable error code, when the orchestrator produced it
    """

    status: Literal["error"] = "error"
    original_response: Optional[Dict[str, Any]] = None
    code: Optional[str] = None
    delegated_from: Optional[str] = None
    delegation_reason: Optional[str] = None


class DelegatingResponse(_Envelope):
    """An agent's request to hand the work to a named peer."""

    status: Literal["delegating"] = "delegating"
    delegate_to: Optional[str] = None
    delegation_reason: Optional[str] = None


AgentResponse = Annotated[
    Union[SuccessResponse, ErrorResponse, DelegatingResponse],
    Field(discriminator="status"),
]

_agent_response_adapter: TypeAdapter = TypeAdapter(AgentResponse)


def parse_agent_response(
    raw: Any,
) -> Optional[Union[SuccessResponse, ErrorResponse, DelegatingResponse]]:
    """Parse an agent's response dict into the tagged union.

    Args:
        raw: Whatever the agent returned

    Returns:
        The matching model, or None if the payload is not a dict or carries
        an unknown status
    """
    if not isinstance(raw, dict):
        return None
    try:
        return _agent_response_adapter.validate_python(raw)
    except ValidationError:
        return None


_PASSTHROUGH_FIELDS = ("data", "aggregated_data", "individual_responses", "original_response")


def to_envelope(response: _Envelope) -> Dict[str, Any]:
    """Dump an envelope model to a plain dict without unset optional fields.

    Payload fields (``data``, ``aggregated_data``, ``individual_responses``,
    ``original_response``) are copied as given, so None values nested inside
    agent payloads survive.
    """
    envelope = response.model_dump(exclude_none=True)
    for name in _PASSTHROUGH_FIELDS:
        value = getattr(response, name, None)
        if value is not None:
            envelope[name] = value
    return envelope


def error_envelope(message: str, **fields: Any) -> Dict[str, Any]:
    """Build an error envelope dict.

    Example:
        >>> error_envelope("No suitable agent found for this request")
        {'message': 'No suitable agent found for this request', 'status': 'error'}
    """
    return to_envelope(ErrorResponse(message=message, **fields))
