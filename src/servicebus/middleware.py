"""
Middleware chain for inbound messages.

A middleware wraps the handling of every message consumed by a bus. It is
called with the deserialized message, the terminal handler, and a
``next_`` function that continues the chain::

    async def timing(message, handler, next_):
        started = time.monotonic()
        try:
            return await next_()
        finally:
            logger.info("took %.3fs", time.monotonic() - started)

    bus.add_middleware(timing)

Middlewares run in insertion order before ``await next_()`` and in reverse
order after it. A middleware may transform the result of ``next_()``,
translate downstream errors, or short-circuit by never calling it.

Every middleware must return an awaitable. ``async def`` functions always
do; a plain function returning anything else fails the message with a
:class:`~servicebus.exceptions.MiddlewareContractError`.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from servicebus.exceptions import ConfigurationError, MiddlewareContractError
from servicebus.handlers import get_handler_name, resolve

logger = logging.getLogger(__name__)

TerminalHandler = Callable[[Any], Awaitable[Any] | Any]
NextFunc = Callable[[], Awaitable[Any]]


class Middleware(Protocol):
    """Interceptor wrapping the handling of a message."""

    def __call__(
        self,
        message: Any,
        handler: TerminalHandler,
        next_: NextFunc,
    ) -> Awaitable[Any]: ...


async def _reject(error: BaseException) -> Any:
    raise error


class MiddlewareChain:
    """
    Ordered, append-only list of middlewares shared by every event of a bus.

    Example:
        >>> chain = MiddlewareChain()
        >>> async def passthrough(message, handler, next_):
        ...     return await next_()
        >>> chain.add(passthrough)
        >>> await chain.perform({"event": "ping"}, handle_ping)
    """

    def __init__(self) -> None:
        self._stack: list[Middleware] = []

    def add(self, middleware: Middleware) -> None:
        """
        Append a middleware to the chain.

        Raises:
            ConfigurationError: If middleware is missing or not callable
        """
        if middleware is None:
            raise ConfigurationError("Middleware must be defined")
        if not callable(middleware):
            raise ConfigurationError("Middleware must be defined as a function")
        self._stack.append(middleware)

    @property
    def middlewares(self) -> tuple[Middleware, ...]:
        return tuple(self._stack)

    def __len__(self) -> int:
        return len(self._stack)

    async def perform(self, message: Any, handler: TerminalHandler) -> Any:
        """
        Run ``message`` through every middleware and then ``handler``.

        The chain walks a snapshot of the stack taken when it starts, so a
        middleware added while messages are in flight only applies to later
        messages.

        Args:
            message: The deserialized message
            handler: Terminal handler invoked once the chain is exhausted

        Returns:
            Whatever the outermost middleware (or the handler) returned

        Raises:
            MiddlewareContractError: If a middleware returned a non-awaitable
            Exception: Anything raised by a middleware or the handler
        """
        stack = tuple(self._stack)
        cursor = 0

        def next_() -> Awaitable[Any]:
            nonlocal cursor
            if cursor >= len(stack):
                return resolve(handler(message))

            middleware = stack[cursor]
            cursor += 1
            result = middleware(message, handler, next_)
            if not inspect.isawaitable(result):
                name = get_handler_name(middleware)
                logger.error(
                    f"Middleware {name} returned a non-awaitable value",
                    extra={"middleware": name, "result_type": type(result).__name__},
                )
                return _reject(MiddlewareContractError(name))
            return result

        return await next_()


__all__ = [
    "Middleware",
    "MiddlewareChain",
    "NextFunc",
    "TerminalHandler",
]
