"""
Handler adapter for normalizing message handlers.

Handlers bound to an event may be plain functions, coroutine functions, or
objects exposing a ``handle`` method (sync or async). They are all wrapped
in a :class:`HandlerAdapter` so the consumption pipeline only ever awaits a
single async callable.

Every handler carries a name used in logs and spans. Functions and classes
supply their own; lambdas must be given one explicitly at bind time.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from typing import Any

from servicebus.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

LAMBDA_NAME = "<lambda>"


def get_handler_name(handler: Any) -> str:
    """
    Get a descriptive name for a handler for logging and debugging.

    Args:
        handler: Any handler object (class instance, function, lambda)

    Returns:
        String name for the handler
    """
    if inspect.isfunction(handler) or inspect.ismethod(handler) or inspect.isbuiltin(handler):
        return str(handler.__name__)
    if hasattr(handler, "__class__") and handler.__class__.__name__ != "function":
        if hasattr(handler, "__name__"):
            return str(handler.__name__)
        return str(handler.__class__.__name__)
    return repr(handler)


def _has_handle_method(handler: Any) -> bool:
    # Looked up on the type so mocks and proxies with dynamic attributes
    # are called directly.
    return callable(getattr(type(handler), "handle", None))


def is_handler(handler: Any) -> bool:
    """True if ``handler`` can be bound to an event."""
    return callable(handler) or _has_handle_method(handler)


async def resolve(result: Any) -> Any:
    """Await ``result`` if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(result):
        return await result
    return result


class HandlerAdapter:
    """
    Adapter that normalizes a handler to ``async (message) -> result``.

    Example:
        >>> async def on_order_created(message):
        ...     return message["value"]["id"]
        >>> adapter = HandlerAdapter(on_order_created)
        >>> adapter.name
        'on_order_created'

        >>> HandlerAdapter(lambda message: None)
        Traceback (most recent call last):
        ...
        servicebus.exceptions.ConfigurationError: ...

    Attributes:
        original: The original unwrapped handler
        name: Descriptive name for logging
    """

    def __init__(self, handler: Any, name: str | None = None) -> None:
        """
        Args:
            handler: Object with handle() method or callable
            name: Explicit handler name. Required for lambdas.

        Raises:
            ConfigurationError: If handler is not callable, or is an
                unnamed lambda
        """
        if not is_handler(handler):
            raise ConfigurationError(
                f"You must provide a handler function, got {type(handler).__name__}"
            )
        resolved_name = name or get_handler_name(handler)
        if resolved_name == LAMBDA_NAME:
            raise ConfigurationError(
                "Anonymous handlers are not supported; pass name= when binding a lambda"
            )
        self._original = handler
        self._name = resolved_name
        self._target: Callable[[Any], Any] = (
            handler.handle if _has_handle_method(handler) else handler
        )

    @property
    def original(self) -> Any:
        """Get the original unwrapped handler."""
        return self._original

    @property
    def name(self) -> str:
        """Get the handler's descriptive name."""
        return self._name

    async def handle(self, message: Any) -> Any:
        """Invoke the handler and await its result if needed."""
        return await resolve(self._target(message))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, HandlerAdapter):
            return self._original is other._original
        return self._original is other

    def __hash__(self) -> int:
        return id(self._original)

    def __repr__(self) -> str:
        return f"HandlerAdapter({self._name})"


__all__ = [
    "HandlerAdapter",
    "get_handler_name",
    "is_handler",
    "resolve",
]
