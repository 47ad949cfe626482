"""
Tracers handed to the bus components.

The publisher and the consumption pipeline never call OpenTelemetry
directly. They hold a :class:`Tracer` and ask it for spans, so tracing can be
switched off per bus (``BusConfig.enable_tracing``) or recorded in memory
by tests.

Example:
    >>> from servicebus.observability import create_tracer
    >>>
    >>> tracer = create_tracer(__name__, enable_tracing=config.enable_tracing)
    >>> span = tracer.start_span("servicebus.publish orders.created", SpanKindEnum.PRODUCER)
    >>> try:
    ...     await exchange.publish(message, routing_key="orders.created")
    ... finally:
    ...     if span is not None:
    ...         span.end()
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager, nullcontext
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import Span, SpanKind

Attributes = dict[str, Any]


class SpanKindEnum(Enum):
    """Span kinds used by the bus, valued with their OpenTelemetry kind."""

    INTERNAL = SpanKind.INTERNAL
    PRODUCER = SpanKind.PRODUCER
    CONSUMER = SpanKind.CONSUMER


@runtime_checkable
class Tracer(Protocol):
    """What the bus needs from a tracer."""

    @property
    def enabled(self) -> bool: ...

    def span(
        self, name: str, attributes: Attributes | None = None
    ) -> AbstractContextManager[Span | None]:
        """Span around a block of code, made current while the block runs."""
        ...

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: Attributes | None = None,
        context: Context | None = None,
    ) -> Span | None:
        """
        Open a span the caller ends.

        Publish and delivery spans stay open across several awaits and a
        delivery span is parented by the context extracted from the message
        headers, so a context manager does not fit there.
        """
        ...


class NullTracer:
    """Tracer used when tracing is off. Produces no spans."""

    enabled = False

    def span(
        self, name: str, attributes: Attributes | None = None
    ) -> AbstractContextManager[None]:
        return nullcontext()

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: Attributes | None = None,
        context: Context | None = None,
    ) -> None:
        return None


class OpenTelemetryTracer:
    """
    Tracer backed by the OpenTelemetry API.

    Args:
        tracer_name: Instrumentation scope name, usually the module name
        tracer_provider: Provider to use; the globally configured one if None
    """

    enabled = True

    def __init__(self, tracer_name: str, tracer_provider: trace.TracerProvider | None = None) -> None:
        self._otel = trace.get_tracer(tracer_name, tracer_provider=tracer_provider)

    def span(
        self, name: str, attributes: Attributes | None = None
    ) -> AbstractContextManager[Span]:
        return self._otel.start_as_current_span(name, attributes=attributes)

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: Attributes | None = None,
        context: Context | None = None,
    ) -> Span:
        return self._otel.start_span(name, context=context, kind=kind.value, attributes=attributes)


@dataclass(frozen=True)
class RecordedSpan:
    name: str
    kind: SpanKindEnum
    attributes: Attributes = field(default_factory=dict)


class MockTracer:
    """
    Tracer for tests. Records every requested span and produces none.

    Example:
        >>> tracer = MockTracer()
        >>> bus = Bus(config, tracer=tracer)
        >>> ...
        >>> tracer.span_names
        ['servicebus.publish orders.created']
    """

    enabled = True

    def __init__(self) -> None:
        self.spans: list[RecordedSpan] = []

    @property
    def span_names(self) -> list[str]:
        return [span.name for span in self.spans]

    def clear(self) -> None:
        self.spans.clear()

    @contextmanager
    def span(self, name: str, attributes: Attributes | None = None) -> Iterator[None]:
        self.spans.append(RecordedSpan(name, SpanKindEnum.INTERNAL, dict(attributes or {})))
        yield None

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: Attributes | None = None,
        context: Context | None = None,
    ) -> None:
        self.spans.append(RecordedSpan(name, kind, dict(attributes or {})))
        return None


def create_tracer(
    name: str,
    enable_tracing: bool = True,
    tracer_provider: trace.TracerProvider | None = None,
) -> Tracer:
    """
    Build the tracer a component uses when none is injected.

    Components follow the same pattern::

        self._tracer = tracer or create_tracer(__name__, config.enable_tracing)
    """
    if not enable_tracing:
        return NullTracer()
    return OpenTelemetryTracer(name, tracer_provider)


__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "RecordedSpan",
    "SpanKindEnum",
    "create_tracer",
]
