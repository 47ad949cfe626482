"""
Service bus facade.

:class:`Bus` wires the connection manager, binding registry, middleware
chain, publisher and dead letter consumers of one service together.
Callers construct and own the instance; nothing here is global.

Example:
    >>> from servicebus import Bus, BusConfig
    >>>
    >>> bus = Bus(BusConfig(connection_url="amqp://localhost", service_name="orders"))
    >>> bus.init()
    >>>
    >>> async def on_order_created(message):
    ...     print(message["value"])
    >>>
    >>> await bus.bind_event("orders.created", on_order_created)
    >>> await bus.send_message("orders.created", {"value": {"id": 42}})
    >>> await bus.disconnect()

Or as an async context manager:
    >>> async with Bus(config) as bus:
    ...     await bus.send_message("orders.created", {"value": {"id": 42}})
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Mapping
from datetime import UTC, datetime
from typing import Any

from aio_pika.abc import AbstractChannel

from servicebus.config import BusConfig
from servicebus.connection import ConnectionManager
from servicebus.deadletter import DeadLetterConsumer, DecisionFunc
from servicebus.exceptions import ConfigurationError, NotInitializedError
from servicebus.handlers import HandlerAdapter
from servicebus.middleware import Middleware, MiddlewareChain, TerminalHandler
from servicebus.naming import dead_letter_exchange_name, dead_letter_queue_name, queue_name
from servicebus.observability.tracer import Tracer, create_tracer
from servicebus.pipeline import ConsumptionPipeline
from servicebus.publisher import Publisher
from servicebus.registry import EventBindingRegistry
from servicebus.stats import BusStats


def _require_event_name(event_name: Any) -> None:
    if not isinstance(event_name, str) or not event_name:
        raise ConfigurationError(f"event_name must be a non-empty string, got {event_name!r}")


class Bus:
    """
    An AMQP topic bus for one service.

    Features:
    - One durable queue and one consumer per bound event, with any number
      of handlers run in bind order
    - Middleware around every delivery
    - Per-delivery timeout; failures are nacked to a per-service dead
      letter queue
    - Dead letter consumers that delete, re-enqueue or rotate messages
    - Optional OpenTelemetry tracing with context propagation in headers

    Attributes:
        config: The bus configuration
        stats: Operational counters
    """

    def __init__(
        self,
        config: BusConfig,
        *,
        tracer: Tracer | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """
        Args:
            config: Bus configuration
            tracer: Optional custom tracer. If None, one is created based on
                config.enable_tracing.
            logger: Optional logger shared by every component of the bus

        Raises:
            ConfigurationError: If config is not a BusConfig
        """
        if not isinstance(config, BusConfig):
            raise ConfigurationError(f"config must be a BusConfig, got {type(config).__name__}")

        self._config = config
        self._logger = logger or logging.getLogger(__name__)
        self._tracer = tracer or create_tracer(__name__, config.enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._stats = BusStats()

        self._middleware = MiddlewareChain()
        self._connection = ConnectionManager(config, stats=self._stats, logger=self._logger)
        self._publisher = Publisher(
            config,
            self._connection,
            stats=self._stats,
            tracer=self._tracer,
            logger=self._logger,
        )
        self._registry = EventBindingRegistry(
            config,
            self._connection,
            self._create_pipeline,
            logger=self._logger,
        )
        self._dead_letter_consumers: list[DeadLetterConsumer] = []

        self._connection.add_close_callback(self._registry.clear)
        self._connection.add_close_callback(self._dead_letter_consumers.clear)

    @property
    def config(self) -> BusConfig:
        return self._config

    @property
    def stats(self) -> BusStats:
        return self._stats

    @property
    def is_connected(self) -> bool:
        return self._connection.is_connected

    @property
    def dead_letter_consumers(self) -> list[DeadLetterConsumer]:
        return list(self._dead_letter_consumers)

    # Lifecycle

    def init(self) -> asyncio.Task[AbstractChannel]:
        """
        Connect and provision the bus topology.

        Returns immediately with a task resolving to the channel once the
        dead letter exchange and queue, the root exchange and the prefetch
        limit are in place. Binding and publishing may start before the
        task completes; they wait for it.
        """
        return self._connection.init()

    async def disconnect(self) -> None:
        """
        Close the channel and the connection and forget every binding.

        Raises:
            NotInitializedError: If init() was never called
        """
        await self._connection.disconnect()

    async def __aenter__(self) -> Bus:
        await self.init()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    # Naming

    def generate_queue_name(self, event_name: str) -> str:
        return queue_name(self._config.environment, self._config.service_name, event_name)

    def generate_dead_letter_exchange_name(self) -> str:
        return dead_letter_exchange_name(self._config.environment, self._config.service_name)

    def generate_dead_letter_queue_name(self) -> str:
        return dead_letter_queue_name(self._config.environment, self._config.service_name)

    # Consuming

    def bind_event(
        self,
        event_name: str,
        handler: Any,
        *,
        name: str | None = None,
    ) -> Awaitable[None]:
        """
        Bind a handler to an event.

        Arguments are validated immediately; the returned awaitable performs
        the broker work.

        Args:
            event_name: Event (routing key) to consume
            handler: Function, coroutine function or object with handle()
            name: Handler name for logs. Required for lambdas.

        Raises:
            ConfigurationError: If event_name or handler is invalid
            NotInitializedError: If init() was never called
        """
        _require_event_name(event_name)
        adapter = HandlerAdapter(handler, name=name)
        if not self._connection.is_initialized:
            raise NotInitializedError("bind_event")
        return self._registry.bind(event_name, adapter)

    on = bind_event

    def handler_count(self, event_name: str | None = None) -> int:
        """Number of handlers bound to ``event_name``, or to all events."""
        return self._registry.handler_count(event_name)

    def add_middleware(self, middleware: Middleware) -> None:
        """
        Add a middleware run around every delivery of every event.

        Raises:
            ConfigurationError: If middleware is missing or not callable
        """
        self._middleware.add(middleware)

    async def perform_middleware(self, message: Any, handler: TerminalHandler) -> Any:
        """Run ``message`` through the middleware chain and ``handler``."""
        return await self._middleware.perform(message, handler)

    def _create_pipeline(self, event_name: str) -> ConsumptionPipeline:
        return ConsumptionPipeline(
            event_name,
            config=self._config,
            handlers=self._registry.handlers,
            middleware=self._middleware,
            stats=self._stats,
            tracer=self._tracer,
            logger=self._logger,
        )

    # Publishing

    def send_message(self, event_name: str, message: Mapping[str, Any]) -> Awaitable[str]:
        """
        Publish ``message["value"]`` as the event ``event_name``.

        Args:
            event_name: Event name, used as the routing key
            message: Mapping whose ``value`` becomes the envelope payload

        Returns:
            Awaitable resolving to the messageId

        Raises:
            ConfigurationError: If event_name or message is invalid
            NotInitializedError: If init() was never called
        """
        _require_event_name(event_name)
        if not isinstance(message, Mapping):
            raise ConfigurationError(f"message must be a mapping, got {type(message).__name__}")
        if not self._connection.is_initialized:
            raise NotInitializedError("send_message")
        return self._publisher.send(event_name, message.get("value"))

    emit = send_message

    # Dead letters

    def listen_dead_letter_queue(self, decide: DecisionFunc) -> Awaitable[str]:
        """
        Start a consumer on this service's dead letter queue.

        Args:
            decide: Called with each dead letter, returns (or resolves to)
                a DeadLetterAction. Any other outcome cancels the consumer.

        Returns:
            Awaitable resolving to the consumer tag

        Raises:
            ConfigurationError: If decide is not callable
            NotInitializedError: If init() was never called
        """
        if not callable(decide):
            raise ConfigurationError("You must provide a dead letter decision function")
        if not self._connection.is_initialized:
            raise NotInitializedError("listen_dead_letter_queue")

        consumer = DeadLetterConsumer(
            decide,
            config=self._config,
            connection=self._connection,
            publisher=self._publisher,
            stats=self._stats,
            logger=self._logger,
        )
        self._dead_letter_consumers.append(consumer)
        return consumer.start()

    # Stats

    def get_stats_dict(self) -> dict[str, Any]:
        """
        Statistics as a dictionary.

        Returns:
            Counters and timestamps from :class:`BusStats` plus connection
            state, bindings, consumer tags and uptime.
        """
        uptime_seconds = None
        if self._stats.connected_at is not None:
            uptime_seconds = (datetime.now(UTC) - self._stats.connected_at).total_seconds()

        return {
            **self._stats.as_dict(),
            "is_connected": self.is_connected,
            "handler_count": self.handler_count(),
            "bound_events": self._registry.events,
            "consumer_tags": self._registry.consumer_tags,
            "middleware_count": len(self._middleware),
            "dead_letter_consumers": len(self._dead_letter_consumers),
            "uptime_seconds": uptime_seconds,
        }


__all__ = ["Bus"]
