"""
Consumption pipeline.

One :class:`ConsumptionPipeline` is the consumer callback of one event
queue. For every delivery it:

1. rejects redelivered messages straight to the dead letter queue
2. decodes the JSON body
3. runs the middleware chain with a terminal step that calls every bound
   handler in bind order, each with its own deep copy of the message
4. bounds steps 2-3 by the configured timeout
5. acks on success, nacks without requeue on any failure

A nack without requeue routes the message to the service's dead letter
exchange, which was set as the queue's ``x-dead-letter-exchange`` when the
queue was declared.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import logging
import time
import traceback
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from aio_pika.abc import AbstractIncomingMessage
from opentelemetry.propagate import extract
from opentelemetry.trace import Span, Status, StatusCode

from servicebus.config import BusConfig
from servicebus.envelope import MessageHeaders
from servicebus.exceptions import (
    MessageDeserializationError,
    MessageTimeoutError,
    RedeliveryError,
)
from servicebus.handlers import HandlerAdapter
from servicebus.middleware import MiddlewareChain
from servicebus.naming import queue_name
from servicebus.observability.attributes import (
    ATTR_ERROR_TYPE,
    ATTR_EVENT_NAME,
    ATTR_HANDLER_COUNT,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_OUTCOME,
    ATTR_REDELIVERED,
)
from servicebus.observability.tracer import SpanKindEnum, Tracer, create_tracer
from servicebus.serialization import decode_body, json_dumps
from servicebus.stats import BusStats

HandlerLookup = Callable[[str], tuple[HandlerAdapter, ...]]


def describe_error(error: BaseException) -> str:
    """
    Render an error for the failure log line.

    Prefers the formatted traceback, then the error's repr, then its message.
    """
    if error.__traceback__ is not None:
        return "".join(traceback.format_exception(type(error), error, error.__traceback__)).rstrip()
    if error.args:
        return repr(error)
    return str(error) or type(error).__name__


def describe_result(result: Any) -> str:
    """JSON rendering of a handler result, falling back to repr()."""
    try:
        return json_dumps(result)
    except (TypeError, ValueError):
        return repr(result)


def _carrier(headers: Mapping[str, Any] | None) -> dict[str, str]:
    carrier: dict[str, str] = {}
    for key, value in (headers or {}).items():
        if isinstance(value, bytes):
            carrier[key] = value.decode("utf-8", errors="replace")
        elif isinstance(value, str):
            carrier[key] = value
    return carrier


class ConsumptionPipeline:
    """
    Consumer callback for a single event.

    Handlers are looked up on every delivery, so handlers bound after the
    consumer started are picked up by the next message.

    Example:
        >>> pipeline = ConsumptionPipeline(
        ...     "orders.created",
        ...     config=config,
        ...     handlers=registry.handlers,
        ...     middleware=chain,
        ... )
        >>> await queue.consume(pipeline)
    """

    def __init__(
        self,
        event_name: str,
        *,
        config: BusConfig,
        handlers: HandlerLookup,
        middleware: MiddlewareChain,
        stats: BusStats | None = None,
        tracer: Tracer | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._event_name = event_name
        self._config = config
        self._handlers = handlers
        self._middleware = middleware
        self._stats = stats or BusStats()
        self._tracer = tracer or create_tracer(__name__, config.enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._logger = logger or logging.getLogger(__name__)
        self._queue_name = queue_name(config.environment, config.service_name, event_name)
        # Work that outlived its timeout; kept referenced until it settles.
        self._stragglers: set[asyncio.Future[Any]] = set()

    @property
    def event_name(self) -> str:
        return self._event_name

    @property
    def pending_after_timeout(self) -> int:
        """Number of timed-out deliveries whose handlers are still running."""
        return len(self._stragglers)

    async def __call__(self, message: AbstractIncomingMessage) -> None:
        headers = MessageHeaders.from_amqp(message.headers)
        message_id = headers.message_id
        log_extra: dict[str, Any] = {
            "message_id": message_id,
            "event_name": self._event_name,
            "queue": self._queue_name,
            "redelivered": bool(message.redelivered),
        }

        self._stats.messages_consumed += 1
        self._stats.last_consume_at = datetime.now(UTC)
        self._logger.info(
            f"Beginning processing event: {message_id} - event name: {self._event_name}",
            extra=log_extra,
        )

        span = self._start_span(message, message_id)
        try:
            if message.redelivered:
                await self._reject_redelivery(message, message_id, span, log_extra)
                return
            await self._process(message, message_id, span, log_extra)
        finally:
            if span is not None:
                span.end()

    async def _reject_redelivery(
        self,
        message: AbstractIncomingMessage,
        message_id: str | None,
        span: Span | None,
        log_extra: dict[str, Any],
    ) -> None:
        error = RedeliveryError(self._event_name, message_id)
        self._stats.messages_redelivered += 1
        self._logger.error(
            f"Finished processing event: {message_id} - WITH REDELIVERY ERROR - "
            f"event name: {self._event_name} - nacking",
            extra={**log_extra, "error": str(error), "error_type": type(error).__name__},
        )
        if span is not None:
            span.set_attribute(ATTR_ERROR_TYPE, type(error).__name__)
            span.set_status(Status(StatusCode.ERROR, str(error)))
        await self._nack(message, span)

    async def _process(
        self,
        message: AbstractIncomingMessage,
        message_id: str | None,
        span: Span | None,
        log_extra: dict[str, Any],
    ) -> None:
        started = time.monotonic()
        try:
            result = await self._run_with_timeout(message.body, message_id)
        except Exception as e:
            duration_ms = (time.monotonic() - started) * 1000
            self._stats.last_error_at = datetime.now(UTC)
            self._logger.error(
                f"Finished processing event: {message_id} - WITH ERROR: {describe_error(e)} - "
                f"event name: {self._event_name} - nacking",
                extra={
                    **log_extra,
                    "duration_ms": duration_ms,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            if span is not None:
                span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)
            await self._nack(message, span)
            return

        duration_ms = (time.monotonic() - started) * 1000
        self._logger.info(
            f"Finished processing event: {message_id} - event name: {self._event_name}",
            extra={**log_extra, "duration_ms": duration_ms, "success": True},
        )
        if result:
            self._logger.debug(f"Got result: {describe_result(result)}", extra=log_extra)

        await message.ack()
        self._stats.messages_acked += 1
        if span is not None:
            span.set_attribute(ATTR_OUTCOME, "ack")
            span.set_status(Status(StatusCode.OK))

    async def _run_with_timeout(self, body: bytes, message_id: str | None) -> Any:
        work = asyncio.ensure_future(self._handle_body(body))
        try:
            return await asyncio.wait_for(asyncio.shield(work), timeout=self._config.timeout)
        except TimeoutError:
            if work.done():
                # The work itself raised a TimeoutError.
                raise
            self._stats.messages_timed_out += 1
            self._stragglers.add(work)
            work.add_done_callback(functools.partial(self._on_late_completion, message_id))
            raise MessageTimeoutError(self._event_name, self._config.timeout) from None

    async def _handle_body(self, body: bytes) -> Any:
        try:
            message = decode_body(body)
        except ValueError as e:
            # UnicodeDecodeError and JSONDecodeError are both ValueErrors.
            raise MessageDeserializationError(self._event_name, str(e)) from e
        return await self._middleware.perform(message, self._dispatch)

    async def _dispatch(self, message: Any) -> Any:
        result = None
        for adapter in self._handlers(self._event_name):
            started = time.monotonic()
            try:
                result = await adapter.handle(copy.deepcopy(message))
            except Exception as e:
                self._logger.debug(
                    f"Handler {adapter.name} failed for {self._event_name}: {e}",
                    extra={
                        "handler": adapter.name,
                        "event_name": self._event_name,
                        "error_type": type(e).__name__,
                    },
                )
                raise
            self._logger.debug(
                f"Handler {adapter.name} processed {self._event_name}",
                extra={
                    "handler": adapter.name,
                    "event_name": self._event_name,
                    "duration_ms": (time.monotonic() - started) * 1000,
                },
            )
        return result

    def _on_late_completion(self, message_id: str | None, work: asyncio.Future[Any]) -> None:
        self._stragglers.discard(work)
        if work.cancelled():
            return
        error = work.exception()
        if error is not None:
            self._logger.warning(
                f"Timed out processing of {message_id} failed after being dead-lettered: {error}",
                extra={
                    "message_id": message_id,
                    "event_name": self._event_name,
                    "error": str(error),
                    "error_type": type(error).__name__,
                },
            )
        else:
            self._logger.warning(
                f"Timed out processing of {message_id} completed after being dead-lettered",
                extra={"message_id": message_id, "event_name": self._event_name},
            )

    async def _nack(self, message: AbstractIncomingMessage, span: Span | None) -> None:
        await message.nack(requeue=False)
        self._stats.messages_nacked += 1
        if span is not None:
            span.set_attribute(ATTR_OUTCOME, "nack")

    def _start_span(self, message: AbstractIncomingMessage, message_id: str | None) -> Span | None:
        if not self._enable_tracing:
            return None
        return self._tracer.start_span(
            f"servicebus.consume {self._event_name}",
            kind=SpanKindEnum.CONSUMER,
            attributes={
                ATTR_MESSAGING_SYSTEM: "rabbitmq",
                ATTR_MESSAGING_DESTINATION: self._queue_name,
                ATTR_MESSAGING_OPERATION: "process",
                ATTR_MESSAGING_MESSAGE_ID: message_id or "",
                ATTR_EVENT_NAME: self._event_name,
                ATTR_HANDLER_COUNT: len(self._handlers(self._event_name)),
                ATTR_REDELIVERED: bool(message.redelivered),
            },
            context=extract(_carrier(message.headers)),
        )


__all__ = [
    "ConsumptionPipeline",
    "HandlerLookup",
    "describe_error",
    "describe_result",
]
