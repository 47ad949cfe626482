"""
Wire envelope and header model.

Every published event is wrapped in an :class:`Envelope`::

    {"date": "...", "realm": "<service>", "event": "<event name>", "value": ...}

and carries three AMQP headers used end to end for correlation and for
dead letter rerouting: ``sentFromService``, ``originalRoutingKey`` and
``messageId``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

CONTENT_TYPE_JSON = "application/json"

HEADER_SENT_FROM_SERVICE = "sentFromService"
HEADER_ORIGINAL_ROUTING_KEY = "originalRoutingKey"
HEADER_MESSAGE_ID = "messageId"


class Envelope(BaseModel):
    """
    Structured payload wrapping an application event.

    Envelopes are immutable; a new one is built for every publish.

    Attributes:
        date: When the event was published (UTC)
        realm: Name of the publishing service
        event: Event name, also the routing key
        value: Arbitrary JSON-serializable payload

    Example:
        >>> envelope = Envelope(realm="svc", event="orders.created", value={"x": 1})
        >>> envelope.event
        'orders.created'
    """

    model_config = ConfigDict(frozen=True)

    date: datetime = Field(default_factory=lambda: datetime.now(UTC))
    realm: str
    event: str
    value: Any = None

    def to_bytes(self) -> bytes:
        """Serialize to the UTF-8 JSON wire format."""
        return self.model_dump_json().encode("utf-8")


@dataclass(frozen=True)
class MessageHeaders:
    """The headers the bus reads and writes on every message."""

    sent_from_service: str | None
    original_routing_key: str | None
    message_id: str | None

    @classmethod
    def new(cls, service_name: str, routing_key: str) -> MessageHeaders:
        """Headers for a fresh publish, with a newly generated message id."""
        return cls(
            sent_from_service=service_name,
            original_routing_key=routing_key,
            message_id=str(uuid4()),
        )

    @classmethod
    def from_amqp(cls, headers: Mapping[str, Any] | None) -> MessageHeaders:
        """Read the bus headers from an incoming message's header table."""
        headers = headers or {}

        def get(key: str) -> str | None:
            value = headers.get(key)
            if isinstance(value, bytes):
                return value.decode("utf-8")
            return None if value is None else str(value)

        return cls(
            sent_from_service=get(HEADER_SENT_FROM_SERVICE),
            original_routing_key=get(HEADER_ORIGINAL_ROUTING_KEY),
            message_id=get(HEADER_MESSAGE_ID),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            HEADER_SENT_FROM_SERVICE: self.sent_from_service,
            HEADER_ORIGINAL_ROUTING_KEY: self.original_routing_key,
            HEADER_MESSAGE_ID: self.message_id,
        }


__all__ = [
    "CONTENT_TYPE_JSON",
    "Envelope",
    "HEADER_MESSAGE_ID",
    "HEADER_ORIGINAL_ROUTING_KEY",
    "HEADER_SENT_FROM_SERVICE",
    "MessageHeaders",
]
