"""
Dead letter queue consumer.

Messages nacked by a consumption pipeline land in the service's dead
letter queue. A :class:`DeadLetterConsumer` hands each of them to a
decision function that picks a :class:`DeadLetterAction`:

- ``DELETE``: acknowledge and drop the message
- ``REENQUEUE``: acknowledge, then republish it to the root exchange under
  the name of the queue it originally failed in, so only that service's
  handlers see it again
- ``SEND_TO_BACK``: acknowledge, then republish it to the dead letter
  exchange so it moves behind the other dead letters

Republished messages keep their body and the bus headers. Any other
decision, or a decision function that raises, cancels the consumer; the
undecided message stays unacknowledged and returns to the queue when the
channel closes.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from uuid import uuid4

from aio_pika.abc import AbstractIncomingMessage

from servicebus.config import BusConfig
from servicebus.connection import ConnectionManager
from servicebus.envelope import MessageHeaders
from servicebus.exceptions import DeadLetterConsumerError, NotInitializedError
from servicebus.handlers import resolve
from servicebus.naming import queue_name
from servicebus.pipeline import describe_error
from servicebus.publisher import Publisher
from servicebus.stats import BusStats


class DeadLetterAction(str, Enum):
    """What to do with a dead letter."""

    DELETE = "DELETE_MESSAGE"
    REENQUEUE = "REENQUEUE_MESSAGE"
    SEND_TO_BACK = "SEND_TO_BACK"


DecisionFunc = Callable[
    [AbstractIncomingMessage],
    "DeadLetterAction | str | None | Awaitable[DeadLetterAction | str | None]",
]


class DeadLetterConsumer:
    """
    Consumer of a service's dead letter queue.

    Each consumer gets a unique consumer tag so several can run side by
    side, for example one per maintenance task.

    Example:
        >>> consumer = DeadLetterConsumer(lambda m: DeadLetterAction.DELETE, ...)
        >>> tag = await consumer.start()
    """

    def __init__(
        self,
        decide: DecisionFunc,
        *,
        config: BusConfig,
        connection: ConnectionManager,
        publisher: Publisher,
        stats: BusStats | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._decide = decide
        self._config = config
        self._connection = connection
        self._publisher = publisher
        self._stats = stats or BusStats()
        self._logger = logger or logging.getLogger(__name__)

        self.consumer_tag = str(uuid4())
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def start(self) -> str:
        """
        Start consuming the dead letter queue.

        Returns:
            The consumer tag

        Raises:
            NotInitializedError: If init() was never called
        """
        await self._connection.ready("listen_dead_letter_queue")
        await self._connection.dead_letter_queue.consume(
            self.on_message,
            consumer_tag=self.consumer_tag,
        )
        self._logger.info(
            f"Listening to dead letter queue {self._connection.dead_letter_queue_name}",
            extra={
                "dead_letter_queue": self._connection.dead_letter_queue_name,
                "consumer_tag": self.consumer_tag,
            },
        )
        return self.consumer_tag

    async def on_message(self, message: AbstractIncomingMessage) -> None:
        headers = MessageHeaders.from_amqp(message.headers)
        self._logger.info(
            f"Processing messageId: {headers.message_id}",
            extra={
                "message_id": headers.message_id,
                "original_routing_key": headers.original_routing_key,
                "sent_from_service": headers.sent_from_service,
                "consumer_tag": self.consumer_tag,
            },
        )

        try:
            action = await resolve(self._decide(message))
            await self._apply(action, message, headers)
        except Exception as e:
            await self.cancel(e)

    async def _apply(
        self,
        action: DeadLetterAction | str | None,
        message: AbstractIncomingMessage,
        headers: MessageHeaders,
    ) -> None:
        if action == DeadLetterAction.DELETE:
            await message.ack()
            self._stats.dead_letters_deleted += 1
            self._logger.info(
                f"Deleted dead letter {headers.message_id}",
                extra={"message_id": headers.message_id},
            )

        elif action == DeadLetterAction.REENQUEUE:
            if not headers.original_routing_key:
                raise DeadLetterConsumerError(
                    f"Cannot re-enqueue {headers.message_id}: no originalRoutingKey header"
                )
            target = queue_name(
                self._config.environment,
                self._config.service_name,
                headers.original_routing_key,
            )
            await message.ack()
            await self._publisher.republish(
                self._connection.root_exchange, target, message.body, headers
            )
            self._stats.dead_letters_reenqueued += 1
            self._logger.info(
                f"Re-enqueued dead letter {headers.message_id} to {target}",
                extra={"message_id": headers.message_id, "queue": target},
            )

        elif action == DeadLetterAction.SEND_TO_BACK:
            await message.ack()
            await self._publisher.republish(
                self._connection.dead_letter_exchange,
                self._connection.dead_letter_queue_name,
                message.body,
                headers,
            )
            self._stats.dead_letters_sent_to_back += 1
            self._logger.info(
                f"Sent dead letter {headers.message_id} to the back of the queue",
                extra={
                    "message_id": headers.message_id,
                    "dead_letter_queue": self._connection.dead_letter_queue_name,
                },
            )

        else:
            raise DeadLetterConsumerError(f"Unrecognised dead letter decision: {action!r}")

    async def cancel(self, error: BaseException | None = None) -> None:
        """
        Stop consuming. Safe to call more than once.

        The consumer only counts as cancelled once the broker confirmed it,
        so a failed cancel is retried by the next failing message. After
        ``disconnect()`` the consumer is already gone with the channel.
        """
        if self._cancelled:
            return

        if error is not None:
            self._logger.error(
                f"Shutting down dead letter consumer {self.consumer_tag}: {describe_error(error)}",
                extra={
                    "consumer_tag": self.consumer_tag,
                    "error": str(error),
                    "error_type": type(error).__name__,
                },
            )
        try:
            await self._connection.dead_letter_queue.cancel(self.consumer_tag)
        except NotInitializedError:
            self._logger.info(
                f"Dead letter consumer {self.consumer_tag} closed with the connection",
                extra={"consumer_tag": self.consumer_tag},
            )
        except Exception as e:
            self._logger.error(
                f"Failed to cancel dead letter consumer {self.consumer_tag}: {e}",
                exc_info=True,
                extra={
                    "consumer_tag": self.consumer_tag,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise

        self._cancelled = True
        self._stats.dead_letter_consumers_cancelled += 1


__all__ = ["DeadLetterAction", "DeadLetterConsumer", "DecisionFunc"]
