"""
Tracing integration tests for the bus.

Uses the OpenTelemetry SDK with an in-memory exporter to check that
publishing and consuming produce linked PRODUCER/CONSUMER spans, and that
the tracing middleware wraps handlers in a span.
"""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind, StatusCode

from servicebus import Bus, BusConfig
from servicebus.observability import (
    ATTR_EVENT_NAME,
    ATTR_OUTCOME,
    MockTracer,
    OpenTelemetryTracer,
    tracing_middleware,
)
from tests.fixtures import FakeBroker, FakeIncomingMessage

EVENT = "orders.created"
QUEUE = "dev.svc.orders.created"


@pytest.fixture
def exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def tracer(exporter: InMemorySpanExporter) -> OpenTelemetryTracer:
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return OpenTelemetryTracer("servicebus.tests", provider)


@pytest_asyncio.fixture
async def bus(broker: FakeBroker, tracing_config: BusConfig, tracer: OpenTelemetryTracer) -> Bus:
    bus = Bus(tracing_config, tracer=tracer)
    await bus.init()
    return bus


def spans_by_name(exporter: InMemorySpanExporter) -> dict[str, Any]:
    return {span.name: span for span in exporter.get_finished_spans()}


async def redeliver_published(broker: FakeBroker) -> FakeIncomingMessage:
    """Feed the last message published to the root exchange to its consumer."""
    [(published, _)] = broker.published("root.exchange")
    message = FakeIncomingMessage(published.body, headers=dict(published.headers))
    await broker.consumer(QUEUE)(message)
    return message


class TestPublishTracing:
    """Tests for PRODUCER spans."""

    @pytest.mark.asyncio
    async def test_publish_creates_producer_span(
        self, bus: Bus, exporter: InMemorySpanExporter
    ) -> None:
        message_id = await bus.send_message(EVENT, {"value": 1})

        span = spans_by_name(exporter)[f"servicebus.publish {EVENT}"]
        assert span.kind == SpanKind.PRODUCER
        assert span.attributes[ATTR_EVENT_NAME] == EVENT
        assert span.attributes["messaging.message_id"] == message_id
        assert span.status.status_code == StatusCode.OK

    @pytest.mark.asyncio
    async def test_publish_injects_trace_context(self, bus: Bus, broker: FakeBroker) -> None:
        await bus.send_message(EVENT, {"value": 1})

        [(message, _)] = broker.published("root.exchange")
        assert "traceparent" in message.headers

    @pytest.mark.asyncio
    async def test_failed_publish_marks_span_error(
        self, bus: Bus, broker: FakeBroker, exporter: InMemorySpanExporter
    ) -> None:
        broker.exchanges["root.exchange"].publish.side_effect = RuntimeError("unroutable")

        with pytest.raises(RuntimeError):
            await bus.send_message(EVENT, {"value": 1})

        span = spans_by_name(exporter)[f"servicebus.publish {EVENT}"]
        assert span.status.status_code == StatusCode.ERROR


class TestConsumeTracing:
    """Tests for CONSUMER spans."""

    @pytest.mark.asyncio
    async def test_consumer_span_continues_producer_trace(
        self, bus: Bus, broker: FakeBroker, exporter: InMemorySpanExporter
    ) -> None:
        async def on_order_created(message: Any) -> None:
            pass

        await bus.bind_event(EVENT, on_order_created)
        await bus.send_message(EVENT, {"value": 1})

        await redeliver_published(broker)

        spans = spans_by_name(exporter)
        producer = spans[f"servicebus.publish {EVENT}"]
        consumer = spans[f"servicebus.consume {EVENT}"]
        assert consumer.kind == SpanKind.CONSUMER
        assert consumer.context.trace_id == producer.context.trace_id
        assert consumer.parent.span_id == producer.context.span_id
        assert consumer.attributes[ATTR_OUTCOME] == "ack"

    @pytest.mark.asyncio
    async def test_failed_delivery_marks_span_error(
        self, bus: Bus, broker: FakeBroker, exporter: InMemorySpanExporter
    ) -> None:
        async def failing(message: Any) -> None:
            raise ValueError("bad order")

        await bus.bind_event(EVENT, failing)
        await bus.send_message(EVENT, {"value": 1})

        message = await redeliver_published(broker)

        message.nack.assert_awaited_once_with(requeue=False)
        consumer = spans_by_name(exporter)[f"servicebus.consume {EVENT}"]
        assert consumer.status.status_code == StatusCode.ERROR
        assert consumer.attributes[ATTR_OUTCOME] == "nack"

    @pytest.mark.asyncio
    async def test_mock_tracer_records_consume(
        self, broker: FakeBroker, tracing_config: BusConfig
    ) -> None:
        tracer = MockTracer()
        bus = Bus(tracing_config, tracer=tracer)
        await bus.init()

        async def on_order_created(message: Any) -> None:
            pass

        await bus.bind_event(EVENT, on_order_created)
        await bus.send_message(EVENT, {"value": 1})
        await redeliver_published(broker)

        assert tracer.span_names == [f"servicebus.publish {EVENT}", f"servicebus.consume {EVENT}"]


class TestTracingMiddleware:
    """Tests for tracing_middleware()."""

    @pytest.mark.asyncio
    async def test_wraps_handlers_in_transaction_span(
        self,
        bus: Bus,
        broker: FakeBroker,
        tracer: OpenTelemetryTracer,
        exporter: InMemorySpanExporter,
    ) -> None:
        bus.add_middleware(tracing_middleware(tracer))

        async def on_order_created(message: Any) -> str:
            return "done"

        await bus.bind_event(EVENT, on_order_created)
        await bus.send_message(EVENT, {"value": 1})
        await redeliver_published(broker)

        span = spans_by_name(exporter)[f"servicebus.transaction {EVENT}"]
        assert span.attributes[ATTR_EVENT_NAME] == EVENT
        assert span.attributes["servicebus.realm"] == "svc"
        assert span.status.status_code == StatusCode.OK

    @pytest.mark.asyncio
    async def test_records_and_reraises_errors(
        self, tracer: OpenTelemetryTracer, exporter: InMemorySpanExporter
    ) -> None:
        middleware = tracing_middleware(tracer)

        async def next_() -> Any:
            raise KeyError("missing")

        with pytest.raises(KeyError):
            await middleware({"event": EVENT, "realm": "svc"}, None, next_)

        [span] = exporter.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
        assert span.attributes["servicebus.error.type"] == "KeyError"
        assert [event.name for event in span.events] == ["exception"]

    @pytest.mark.asyncio
    async def test_tolerates_non_envelope_messages(
        self, tracer: OpenTelemetryTracer, exporter: InMemorySpanExporter
    ) -> None:
        middleware = tracing_middleware(tracer)

        async def next_() -> Any:
            return 1

        assert await middleware([1, 2, 3], None, next_) == 1
        [span] = exporter.get_finished_spans()
        assert span.name == "servicebus.transaction unknown"
