"""
Event binding registry.

Maps event names to their bound handlers and lazily provisions one durable
queue and one consumer per event. Binding the same event again only adds
a handler; the existing consumer dispatches to all of them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from aio_pika.abc import AbstractIncomingMessage, AbstractQueue

from servicebus.config import BusConfig
from servicebus.connection import ConnectionManager
from servicebus.handlers import HandlerAdapter
from servicebus.naming import queue_name

ConsumerFactory = Callable[[str], Callable[[AbstractIncomingMessage], object]]


class EventBindingRegistry:
    """
    Registry of event handlers and their consumers.

    Example:
        >>> registry = EventBindingRegistry(config, connection, pipeline_factory)
        >>> await registry.bind("orders.created", HandlerAdapter(on_order_created))
        >>> registry.handler_count("orders.created")
        1
    """

    def __init__(
        self,
        config: BusConfig,
        connection: ConnectionManager,
        consumer_factory: ConsumerFactory,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._connection = connection
        self._consumer_factory = consumer_factory
        self._logger = logger or logging.getLogger(__name__)

        self._handlers: dict[str, list[HandlerAdapter]] = {}
        self._consumer_tags: dict[str, str] = {}
        self._starting: dict[str, asyncio.Future[str]] = {}

    def handlers(self, event_name: str) -> tuple[HandlerAdapter, ...]:
        """Handlers bound to ``event_name``, in bind order."""
        return tuple(self._handlers.get(event_name, ()))

    def handler_count(self, event_name: str | None = None) -> int:
        if event_name is not None:
            return len(self._handlers.get(event_name, ()))
        return sum(len(handlers) for handlers in self._handlers.values())

    @property
    def consumer_tags(self) -> dict[str, str]:
        """Consumer tag of each event whose consumer is running."""
        return dict(self._consumer_tags)

    @property
    def events(self) -> list[str]:
        return list(self._handlers)

    def clear(self) -> None:
        """Forget every binding. Called once the connection is closed."""
        self._handlers.clear()
        self._consumer_tags.clear()
        self._starting.clear()

    async def bind(self, event_name: str, adapter: HandlerAdapter) -> None:
        """
        Bind a handler to an event.

        Declares the event's durable queue (dead-lettering to the service's
        dead letter exchange) and binds it to the root exchange twice: under
        the event name, and under the queue's own name so dead letters can
        be re-enqueued to exactly this queue. The first handler for an event
        also starts its consumer.

        Raises:
            NotInitializedError: If init() was never called
            Exception: Broker errors from declare, bind or consume
        """
        channel = await self._connection.ready("bind_event")
        name = queue_name(self._config.environment, self._config.service_name, event_name)

        queue = await channel.declare_queue(
            name,
            durable=True,
            arguments={"x-dead-letter-exchange": self._connection.dead_letter_exchange_name},
        )
        root_exchange = self._connection.root_exchange
        await queue.bind(root_exchange, routing_key=event_name)
        await queue.bind(root_exchange, routing_key=name)

        # Check and register without yielding, so concurrent binds of the
        # same event start exactly one consumer.
        starting = self._starting.get(event_name)
        needs_consumer = event_name not in self._handlers
        self._handlers.setdefault(event_name, []).append(adapter)

        if needs_consumer:
            await self._start_consumer(event_name, queue, name)
        elif starting is not None:
            # Joined a consumer start still in flight; fail with it.
            await asyncio.shield(starting)

        self._logger.info(
            f"Bound handler {adapter.name} to {event_name}",
            extra={
                "event_name": event_name,
                "handler": adapter.name,
                "queue": name,
                "handler_count": len(self._handlers.get(event_name, ())),
            },
        )

    async def _start_consumer(self, event_name: str, queue: AbstractQueue, name: str) -> None:
        """
        Start the event's consumer.

        Binds of the same event that arrive while ``consume`` is pending
        await the same outcome. If it fails, the whole entry is dropped:
        every handler in it belongs to a bind that raises the same error.
        """
        starting: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._starting[event_name] = starting
        try:
            consumer_tag = await queue.consume(self._consumer_factory(event_name))
        except BaseException as e:
            self._handlers.pop(event_name, None)
            if isinstance(e, asyncio.CancelledError):
                starting.cancel()
            else:
                starting.set_exception(e)
                # Marked retrieved; joined binds re-raise it themselves.
                starting.exception()
            raise
        finally:
            self._starting.pop(event_name, None)

        starting.set_result(consumer_tag)
        self._consumer_tags[event_name] = consumer_tag
        self._logger.info(
            f"Started consumer for {event_name} on {name}",
            extra={"event_name": event_name, "queue": name, "consumer_tag": consumer_tag},
        )


__all__ = ["ConsumerFactory", "EventBindingRegistry"]
