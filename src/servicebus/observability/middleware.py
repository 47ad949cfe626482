"""
Tracing middleware.

Wraps the rest of the middleware chain and the handlers in a span named
after the envelope's event, in the spirit of an APM background transaction.
It is opt-in: add it to a bus like any other middleware.

Example:
    >>> from servicebus.observability import tracing_middleware
    >>>
    >>> bus.add_middleware(tracing_middleware())
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from opentelemetry.trace import Status, StatusCode

from servicebus.middleware import Middleware, NextFunc, TerminalHandler
from servicebus.observability.attributes import ATTR_ERROR_TYPE, ATTR_EVENT_NAME, ATTR_REALM
from servicebus.observability.tracer import Tracer, create_tracer


def tracing_middleware(tracer: Tracer | None = None) -> Middleware:
    """
    Build a middleware that traces every message it sees.

    Args:
        tracer: Tracer to record spans with. Defaults to an
            OpenTelemetry tracer named after this module.

    Returns:
        A middleware function suitable for ``Bus.add_middleware``
    """
    active_tracer = tracer or create_tracer(__name__)

    async def middleware(message: Any, handler: TerminalHandler, next_: NextFunc) -> Any:
        envelope = message if isinstance(message, Mapping) else {}
        event_name = str(envelope.get("event") or "unknown")
        attributes = {ATTR_EVENT_NAME: event_name}
        if envelope.get("realm"):
            attributes[ATTR_REALM] = str(envelope["realm"])

        with active_tracer.span(f"servicebus.transaction {event_name}", attributes) as span:
            try:
                result = await next_()
            except Exception as e:
                # The span context manager records the exception itself.
                if span is not None:
                    span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                raise
            if span is not None:
                span.set_status(Status(StatusCode.OK))
            return result

    return middleware


__all__ = ["tracing_middleware"]
