"""Message envelope exchanged between the orchestrator and agents.

Provides the Message model with typed factories for every message kind,
protocol validation and a lossless dict/JSON round trip. The envelope is
transport-agnostic: nothing here knows how messages travel.
"""

import json
import time
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

BROADCAST_RECIPIENT = "broadcast"

_REQUIRED_FIELDS = ("type", "sender", "recipient", "content")


class MessageType(str, Enum):
    """Kinds of message carried by the protocol."""

    REQUEST = "request"
    RESPONSE = "response"
    DELEGATION = "delegation"
    NOTIFICATION = "notification"
    BROADCAST = "broadcast"
    ERROR = "error"


def _generate_message_id() -> str:
    return f"msg_{uuid4().hex}"


def _now() -> int:
    return int(time.time())


class Message(BaseModel):
    """A single protocol message.

    Fields are fixed at construction; only ``metadata`` and ``references``
    can grow afterwards, through :meth:`set_metadata` and
    :meth:`add_reference`.

    Attributes:
        id: Generated identifier, ``msg_`` prefixed
        type: Message kind
        sender: Name of the sending agent (or ``user``/``orchestrator``)
        recipient: Name of the receiving agent, or ``broadcast``
        timestamp: Unix seconds at construction
        content: Message payload
        metadata: Free-form tracking data (context, entities, ...)
        references: Links to related messages, e.g. ``request_id``

    Example:
        >>> request = Message.create_request("user", "ContentAgent", "Draft a post")
        >>> response = Message.create_response("ContentAgent", "user", "Done", request.id)
        >>> response.is_response_to(request.id)
        True
    """

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str = Field(default_factory=_generate_message_id)
    type: MessageType
    sender: str
    recipient: str
    timestamp: int = Field(default_factory=_now)
    content: Any
    metadata: Dict[str, Any] = Field(default_factory=dict)
    references: Dict[str, Any] = Field(default_factory=dict)

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def create_request(
        cls,
        sender: str,
        recipient: str,
        content: Any,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "Message":
        """Create a request message with no references."""
        return cls(
            type=MessageType.REQUEST,
            sender=sender,
            recipient=recipient,
            content=content,
            metadata=dict(metadata or {}),
        )

    @classmethod
    def create_response(
        cls,
        sender: str,
        recipient: str,
        content: Any,
        request_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "Message":
        """Create a response message referencing the request it answers.

        Args:
            sender: Responding agent
            recipient: Original requester
            content: Response payload
            request_id: ID of the request being answered
            metadata: Optional metadata

        Returns:
            Response message with ``references["request_id"]`` set
        """
        return cls(
            type=MessageType.RESPONSE,
            sender=sender,
            recipient=recipient,
            content=content,
            metadata=dict(metadata or {}),
            references={"request_id": request_id},
        )

    @classmethod
    def create_delegation(
        cls,
        sender: str,
        recipient: str,
        content: Any,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "Message":
        """Create a delegation message handing work to another agent."""
        return cls(
            type=MessageType.DELEGATION,
            sender=sender,
            recipient=recipient,
            content=content,
            metadata=dict(metadata or {}),
        )

    @classmethod
    def create_broadcast(
        cls,
        sender: str,
        content: Any,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "Message":
        """Create a message addressed to every agent."""
        return cls(
            type=MessageType.BROADCAST,
            sender=sender,
            recipient=BROADCAST_RECIPIENT,
            content=content,
            metadata=dict(metadata or {}),
        )

    @classmethod
    def create_error(
        cls,
        sender: str,
        recipient: str,
        error: str,
        metadata: Optional[Dict[str, Any]] = None,
        references: Optional[Dict[str, Any]] = None,
    ) -> "Message":
        """Create an error message whose content is the error text."""
        return cls(
            type=MessageType.ERROR,
            sender=sender,
            recipient=recipient,
            content=error,
            metadata=dict(metadata or {}),
            references=dict(references or {}),
        )

    # ------------------------------------------------------------------
    # Validation and queries
    # ------------------------------------------------------------------

    def validate(self) -> bool:  # type: ignore[override]
        """Check the message follows the protocol.

        Returns:
            False if a required field is empty, or if a response lacks a
            ``request_id`` reference; True otherwise
        """
        if not (self.id and self.type and self.sender and self.recipient and self.timestamp):
            return False
        if self.content is None:
            return False
        if self.type == MessageType.RESPONSE and not self.references.get("request_id"):
            return False
        return True

    def is_response_to(self, request_id: str) -> bool:
        """Return True if this is a response referencing ``request_id``."""
        return (
            self.type == MessageType.RESPONSE
            and self.references.get("request_id") == request_id
        )

    def is_broadcast(self) -> bool:
        """Return True if the message is addressed to every agent."""
        return self.recipient == BROADCAST_RECIPIENT

    def get_metadata_value(self, key: str, default: Any = None) -> Any:
        """Return a metadata value, or ``default`` when absent."""
        return self.metadata.get(key, default)

    def set_metadata(self, key: str, value: Any) -> "Message":
        """Add or replace a metadata value. Returns self for chaining."""
        self.metadata[key] = value
        return self

    def add_reference(self, key: str, value: Any) -> "Message":
        """Add a reference to another message. Returns self for chaining."""
        self.references[key] = value
        return self

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Return all fields, including the generated id and timestamp."""
        return {
            "id": self.id,
            "type": self.type,
            "sender": self.sender,
            "recipient": self.recipient,
            "timestamp": self.timestamp,
            "content": self.content,
            "metadata": dict(self.metadata),
            "references": dict(self.references),
        }

    def to_json(self) -> str:
        """Serialize the message to a JSON string.

        Raises:
            TypeError: If content or metadata is not JSON-serialisable
        """
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> Optional["Message"]:
        """Rebuild a message from :meth:`to_dict` output.

        Args:
            data: Mapping with at least type, sender, recipient and content

        Returns:
            The message, or None if required fields are missing, a field has
            the wrong type, or the rebuilt message fails :meth:`validate`
        """
        if not isinstance(data, dict):
            return None
        if any(data.get(field) is None for field in _REQUIRED_FIELDS):
            return None

        payload = {
            "type": data["type"],
            "sender": data["sender"],
            "recipient": data["recipient"],
            "content": data["content"],
            "metadata": data.get("metadata") or {},
            "references": data.get("references") or {},
        }
        if data.get("id") is not None:
            payload["id"] = data["id"]
        if data.get("timestamp") is not None:
            payload["timestamp"] = data["timestamp"]

        try:
            message = cls.model_validate(payload)
        except ValidationError:
            return None

        return message if message.validate() else None

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> Optional["Message"]:
        """Rebuild a message from :meth:`to_json` output.

        Returns:
            The message, or None if the payload is unparsable or invalid
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return None
        return cls.from_dict(data)
