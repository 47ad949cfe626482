"""
servicebus - AMQP topic messaging bus for services.

This library provides:
- A Bus with durable per-service queues over a shared topic exchange
- Multiple handlers per event with a middleware chain around delivery
- Per-message timeouts with dead-lettering on failure
- Dead letter consumers with stock delete/re-enqueue processors
- OpenTelemetry tracing with context propagation in message headers
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("servicebus-py")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from servicebus import processors
from servicebus.bus import Bus
from servicebus.config import BusConfig
from servicebus.deadletter import DeadLetterAction, DeadLetterConsumer, DecisionFunc
from servicebus.envelope import Envelope, MessageHeaders
from servicebus.exceptions import (
    ConfigurationError,
    DeadLetterConsumerError,
    DeadLetterDecisionError,
    MessageDeserializationError,
    MessageTimeoutError,
    MiddlewareContractError,
    NotInitializedError,
    ProcessingError,
    RedeliveryError,
    ServiceBusError,
)
from servicebus.handlers import HandlerAdapter
from servicebus.middleware import Middleware, MiddlewareChain, NextFunc, TerminalHandler
from servicebus.naming import dead_letter_exchange_name, dead_letter_queue_name, queue_name
from servicebus.stats import BusStats

__all__ = [
    "__version__",
    # Bus
    "Bus",
    "BusConfig",
    "BusStats",
    # Messages
    "Envelope",
    "MessageHeaders",
    # Handlers and middleware
    "HandlerAdapter",
    "Middleware",
    "MiddlewareChain",
    "NextFunc",
    "TerminalHandler",
    # Dead letters
    "DeadLetterAction",
    "DeadLetterConsumer",
    "DecisionFunc",
    "processors",
    # Naming
    "queue_name",
    "dead_letter_exchange_name",
    "dead_letter_queue_name",
    # Exceptions
    "ServiceBusError",
    "ConfigurationError",
    "NotInitializedError",
    "ProcessingError",
    "MessageDeserializationError",
    "MiddlewareContractError",
    "MessageTimeoutError",
    "RedeliveryError",
    "DeadLetterConsumerError",
    "DeadLetterDecisionError",
]
