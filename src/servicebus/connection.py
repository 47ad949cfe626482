"""
Connection manager.

Owns the single broker connection and the single publisher-confirm channel
of a bus, and provisions the topology every bus needs before it can bind
or publish:

1. the dead letter exchange (topic) and its durable queue, bound with ``#``
2. the durable root topic exchange
3. the channel prefetch limit

All declarations are idempotent on the broker, so restarting a service
against an existing topology is safe. Per-event queues are declared later,
when handlers are bound.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime

import aio_pika
from aio_pika import ExchangeType
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractQueue,
)

from servicebus.config import BusConfig
from servicebus.exceptions import NotInitializedError
from servicebus.naming import dead_letter_exchange_name, dead_letter_queue_name
from servicebus.stats import BusStats


class ConnectionManager:
    """
    Connection and topology lifecycle for one bus.

    ``init()`` schedules the connection as a task and returns it, so callers
    can either await it directly or start binding straight away: every
    operation that needs the channel awaits the same task through
    :meth:`ready`.

    Example:
        >>> manager = ConnectionManager(config)
        >>> channel = await manager.init()
        >>> ...
        >>> await manager.disconnect()
    """

    def __init__(
        self,
        config: BusConfig,
        *,
        stats: BusStats | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._stats = stats or BusStats()
        self._logger = logger or logging.getLogger(__name__)

        self._ready: asyncio.Task[AbstractChannel] | None = None
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._root_exchange: AbstractExchange | None = None
        self._dead_letter_exchange: AbstractExchange | None = None
        self._dead_letter_queue: AbstractQueue | None = None

        self._close_callbacks: list[Callable[[], None]] = []

    @property
    def dead_letter_exchange_name(self) -> str:
        return dead_letter_exchange_name(self._config.environment, self._config.service_name)

    @property
    def dead_letter_queue_name(self) -> str:
        return dead_letter_queue_name(self._config.environment, self._config.service_name)

    @property
    def is_initialized(self) -> bool:
        """True once init() has been called (the connection may still be pending)."""
        return self._ready is not None

    @property
    def is_connected(self) -> bool:
        """True if the connection is established and not closed."""
        return self._connection is not None and not self._connection.is_closed

    @property
    def channel(self) -> AbstractChannel:
        if self._channel is None:
            raise NotInitializedError("channel")
        return self._channel

    @property
    def root_exchange(self) -> AbstractExchange:
        if self._root_exchange is None:
            raise NotInitializedError("root_exchange")
        return self._root_exchange

    @property
    def dead_letter_exchange(self) -> AbstractExchange:
        if self._dead_letter_exchange is None:
            raise NotInitializedError("dead_letter_exchange")
        return self._dead_letter_exchange

    @property
    def dead_letter_queue(self) -> AbstractQueue:
        if self._dead_letter_queue is None:
            raise NotInitializedError("dead_letter_queue")
        return self._dead_letter_queue

    def add_close_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback run after disconnect() closed the connection."""
        self._close_callbacks.append(callback)

    def init(self) -> asyncio.Task[AbstractChannel]:
        """
        Start connecting and provisioning the topology.

        Must be called from a running event loop. A second call while a
        connection exists (or is pending) returns the existing task; a call
        after a failed attempt starts a new one.

        Returns:
            Task resolving to the ready channel. Awaiting it re-raises the
            transport error if the broker could not be reached.
        """
        if self._ready is not None and not self._failed(self._ready):
            self._logger.warning(
                "Bus already initialized",
                extra={"rabbitmq_url": self._config.sanitized_url},
            )
            return self._ready

        self._ready = asyncio.ensure_future(self._connect())
        return self._ready

    async def ready(self, operation: str) -> AbstractChannel:
        """
        Wait for the connection started by init().

        Args:
            operation: Name of the calling operation, used in the error

        Raises:
            NotInitializedError: If init() was never called
        """
        if self._ready is None:
            raise NotInitializedError(operation)
        return await self._ready

    async def disconnect(self) -> None:
        """
        Close the channel, then the connection, then run the close callbacks.

        Raises:
            NotInitializedError: If init() was never called
        """
        if self._ready is None:
            raise NotInitializedError("disconnect")

        channel = await self._ready
        await channel.close()
        if self._connection is not None:
            await self._connection.close()

        self._reset()
        for callback in self._close_callbacks:
            callback()

        self._logger.info(
            "Disconnected from RabbitMQ",
            extra={
                "rabbitmq_url": self._config.sanitized_url,
                "root_exchange": self._config.root_exchange,
            },
        )

    async def _connect(self) -> AbstractChannel:
        try:
            self._connection = await aio_pika.connect(self._config.connection_url)
            channel = await self._connection.channel(publisher_confirms=True)
            self._channel = channel

            await self._declare_dead_letter(channel)

            self._root_exchange = await channel.declare_exchange(
                self._config.root_exchange,
                ExchangeType.TOPIC,
                durable=True,
            )
            self._logger.info(
                f"Declared root exchange: {self._config.root_exchange}",
                extra={"exchange_name": self._config.root_exchange},
            )

            await channel.set_qos(prefetch_count=self._config.prefetch)

        except Exception as e:
            self._logger.error(
                f"Failed to connect to RabbitMQ: {e}",
                exc_info=True,
                extra={
                    "rabbitmq_url": self._config.sanitized_url,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            if self._connection is not None and not self._connection.is_closed:
                await self._connection.close()
            self._reset()
            raise

        self._stats.connected_at = datetime.now(UTC)
        self._logger.info(
            "Connected to RabbitMQ and initialized topology",
            extra={
                "rabbitmq_url": self._config.sanitized_url,
                "root_exchange": self._config.root_exchange,
                "dead_letter_queue": self.dead_letter_queue_name,
                "prefetch": self._config.prefetch,
            },
        )
        return channel

    async def _declare_dead_letter(self, channel: AbstractChannel) -> None:
        self._dead_letter_exchange = await channel.declare_exchange(
            self.dead_letter_exchange_name,
            ExchangeType.TOPIC,
            durable=True,
        )
        self._dead_letter_queue = await channel.declare_queue(
            self.dead_letter_queue_name,
            durable=True,
        )
        await self._dead_letter_queue.bind(self._dead_letter_exchange, routing_key="#")

        self._logger.info(
            f"Declared dead letter queue {self.dead_letter_queue_name} "
            f"bound to {self.dead_letter_exchange_name} with routing key '#'",
            extra={
                "dead_letter_exchange": self.dead_letter_exchange_name,
                "dead_letter_queue": self.dead_letter_queue_name,
            },
        )

    def _reset(self) -> None:
        self._ready = None
        self._connection = None
        self._channel = None
        self._root_exchange = None
        self._dead_letter_exchange = None
        self._dead_letter_queue = None
        self._stats.connected_at = None

    @staticmethod
    def _failed(task: asyncio.Task[AbstractChannel]) -> bool:
        return task.done() and (task.cancelled() or task.exception() is not None)


__all__ = ["ConnectionManager"]
