"""
Publisher for envelopes and dead letter republishes.

All messages leave the bus through :class:`Publisher`: new events are
wrapped in an :class:`~servicebus.envelope.Envelope` and published to the
root exchange under their event name, and dead letters are republished
with their original body and headers.

Every message is persistent, ``application/json`` and published with the
mandatory flag on a publisher-confirm channel, so a publish only completes
once the broker has taken responsibility for it.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractExchange
from opentelemetry import trace
from opentelemetry.propagate import inject
from opentelemetry.trace import Status, StatusCode

from servicebus.config import BusConfig
from servicebus.connection import ConnectionManager
from servicebus.envelope import CONTENT_TYPE_JSON, Envelope, MessageHeaders
from servicebus.observability.attributes import (
    ATTR_EVENT_NAME,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_ROUTING_KEY,
    ATTR_MESSAGING_SYSTEM,
    ATTR_REALM,
)
from servicebus.observability.tracer import SpanKindEnum, Tracer, create_tracer
from servicebus.stats import BusStats


def build_message(
    body: bytes,
    headers: MessageHeaders,
    trace_headers: Mapping[str, Any] | None = None,
) -> Message:
    """
    Build a persistent JSON AMQP message.

    Args:
        body: Encoded message body
        headers: The bus correlation headers
        trace_headers: Optional propagation headers (traceparent etc.)
    """
    amqp_headers: dict[str, Any] = dict(trace_headers or {})
    amqp_headers.update(headers.as_dict())
    return Message(
        body=body,
        content_type=CONTENT_TYPE_JSON,
        delivery_mode=DeliveryMode.PERSISTENT,
        headers=amqp_headers,
    )


class Publisher:
    """
    Publishes envelopes to the root exchange of a bus.

    Example:
        >>> publisher = Publisher(config, connection_manager)
        >>> message_id = await publisher.send("orders.created", {"id": 42})
    """

    def __init__(
        self,
        config: BusConfig,
        connection: ConnectionManager,
        *,
        stats: BusStats | None = None,
        tracer: Tracer | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._connection = connection
        self._stats = stats or BusStats()
        self._tracer = tracer or create_tracer(__name__, config.enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._logger = logger or logging.getLogger(__name__)

    async def send(self, event_name: str, value: Any) -> str:
        """
        Publish ``value`` as the event ``event_name``.

        Waits for the connection if init() is still in progress.

        Args:
            event_name: Event name, used as the routing key
            value: JSON-serializable payload

        Returns:
            The generated messageId

        Raises:
            NotInitializedError: If init() was never called
            Exception: Transport, confirm or serialization errors, unchanged
        """
        await self._connection.ready("send_message")

        envelope = Envelope(realm=self._config.service_name, event=event_name, value=value)
        headers = MessageHeaders.new(self._config.service_name, event_name)

        span = None
        trace_headers: dict[str, Any] = {}
        if self._enable_tracing:
            span = self._tracer.start_span(
                f"servicebus.publish {event_name}",
                kind=SpanKindEnum.PRODUCER,
                attributes={
                    ATTR_MESSAGING_SYSTEM: "rabbitmq",
                    ATTR_MESSAGING_DESTINATION: self._config.root_exchange,
                    ATTR_MESSAGING_OPERATION: "publish",
                    ATTR_MESSAGING_MESSAGE_ID: headers.message_id or "",
                    ATTR_MESSAGING_ROUTING_KEY: event_name,
                    ATTR_EVENT_NAME: event_name,
                    ATTR_REALM: self._config.service_name,
                },
            )
            if span is not None:
                inject(trace_headers, context=trace.set_span_in_context(span))

        try:
            await self.republish(
                self._connection.root_exchange,
                event_name,
                envelope.to_bytes(),
                headers,
                trace_headers=trace_headers,
            )
        except Exception as e:
            self._stats.last_error_at = datetime.now(UTC)
            if span is not None:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)
            self._logger.error(
                f"Failed to publish event {event_name}: {e}",
                exc_info=True,
                extra={
                    "event_name": event_name,
                    "message_id": headers.message_id,
                    "exchange_name": self._config.root_exchange,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise
        else:
            if span is not None:
                span.set_status(Status(StatusCode.OK))
        finally:
            if span is not None:
                span.end()

        self._stats.messages_published += 1
        self._stats.last_publish_at = datetime.now(UTC)

        self._logger.debug(
            f"Published event {event_name}",
            extra={
                "event_name": event_name,
                "message_id": headers.message_id,
                "exchange_name": self._config.root_exchange,
            },
        )
        return headers.message_id or ""

    async def republish(
        self,
        exchange: AbstractExchange,
        routing_key: str,
        body: bytes,
        headers: MessageHeaders,
        *,
        trace_headers: Mapping[str, Any] | None = None,
    ) -> None:
        """
        Publish a raw body to an exchange.

        Used directly by dead letter consumers to republish a message with
        its original body and headers.
        """
        message = build_message(body, headers, trace_headers)
        await exchange.publish(message, routing_key=routing_key, mandatory=True)


__all__ = ["Publisher", "build_message"]
