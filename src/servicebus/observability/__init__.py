"""
Observability utilities for servicebus.

Provides the composition-based tracer used by the bus for publish and
consume spans, the standard span attributes, and an opt-in tracing
middleware.

Example:
    >>> from servicebus.observability import create_tracer, tracing_middleware
    >>>
    >>> tracer = create_tracer(__name__, enable_tracing=True)
    >>> bus = Bus(config, tracer=tracer)
    >>> bus.add_middleware(tracing_middleware(tracer))
"""

from servicebus.observability.attributes import (
    ATTR_ERROR_TYPE,
    ATTR_EVENT_NAME,
    ATTR_HANDLER_COUNT,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_ROUTING_KEY,
    ATTR_MESSAGING_SYSTEM,
    ATTR_OUTCOME,
    ATTR_REALM,
    ATTR_REDELIVERED,
)
from servicebus.observability.middleware import tracing_middleware
from servicebus.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    RecordedSpan,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "RecordedSpan",
    "MockTracer",
    "SpanKindEnum",
    "create_tracer",
    # Middleware
    "tracing_middleware",
    # Attributes
    "ATTR_ERROR_TYPE",
    "ATTR_EVENT_NAME",
    "ATTR_HANDLER_COUNT",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_MESSAGE_ID",
    "ATTR_MESSAGING_OPERATION",
    "ATTR_MESSAGING_ROUTING_KEY",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_OUTCOME",
    "ATTR_REALM",
    "ATTR_REDELIVERED",
]
