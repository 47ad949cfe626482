"""
Standard span attributes for servicebus.

These follow OpenTelemetry messaging semantic conventions where applicable.

Example:
    >>> from servicebus.observability.attributes import ATTR_EVENT_NAME
    >>>
    >>> with tracer.span("servicebus.publish", {ATTR_EVENT_NAME: "orders.created"}):
    ...     pass
"""

# =============================================================================
# Messaging Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system identifier, always 'rabbitmq' here."""

ATTR_MESSAGING_DESTINATION = "messaging.destination"
"""Exchange or queue name."""

ATTR_MESSAGING_OPERATION = "messaging.operation"
"""Messaging operation: 'publish', 'process' or 'settle'."""

ATTR_MESSAGING_MESSAGE_ID = "messaging.message_id"
"""The bus messageId header."""

ATTR_MESSAGING_ROUTING_KEY = "messaging.rabbitmq.routing_key"
"""Routing key a message was published with."""

# =============================================================================
# Bus Attributes
# =============================================================================

ATTR_EVENT_NAME = "servicebus.event.name"
"""Logical event name (string)."""

ATTR_REALM = "servicebus.realm"
"""Service that published the envelope (string)."""

ATTR_HANDLER_COUNT = "servicebus.handler.count"
"""Number of handlers bound to the event (integer)."""

ATTR_REDELIVERED = "servicebus.redelivered"
"""Whether the broker flagged the delivery as redelivered (boolean)."""

ATTR_OUTCOME = "servicebus.outcome"
"""Final settlement of a delivery: 'ack' or 'nack'."""

ATTR_ERROR_TYPE = "servicebus.error.type"
"""Exception class name when an operation failed (string)."""


__all__ = [
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_OPERATION",
    "ATTR_MESSAGING_MESSAGE_ID",
    "ATTR_MESSAGING_ROUTING_KEY",
    "ATTR_EVENT_NAME",
    "ATTR_REALM",
    "ATTR_HANDLER_COUNT",
    "ATTR_REDELIVERED",
    "ATTR_OUTCOME",
    "ATTR_ERROR_TYPE",
]
