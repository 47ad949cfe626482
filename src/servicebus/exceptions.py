"""Library exceptions for the servicebus package."""


class ServiceBusError(Exception):
    """Base exception for servicebus library."""

    pass


class ConfigurationError(ServiceBusError, ValueError):
    """Raised when the bus is configured or called with invalid arguments."""

    pass


class NotInitializedError(ServiceBusError):
    """Raised when an operation needs a connection and init() was never called."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"You must init() the bus before calling {operation}()")


class ProcessingError(ServiceBusError):
    """Raised when a delivery fails inside the consumption pipeline.

    Processing errors are recovered at the message level: the delivery is
    nacked without requeue and routed to the dead letter queue.
    """

    pass


class MessageDeserializationError(ProcessingError):
    """Raised when a message body is not valid UTF-8 JSON."""

    def __init__(self, event_name: str, message: str) -> None:
        self.event_name = event_name
        super().__init__(f"Could not deserialize message for {event_name}: {message}")


class MiddlewareContractError(ProcessingError, AssertionError):
    """Raised when a middleware function returns something that is not awaitable."""

    def __init__(self, middleware_name: str) -> None:
        self.middleware_name = middleware_name
        super().__init__(f"middleware functions must return an awaitable (got one from {middleware_name})")


class MessageTimeoutError(ProcessingError, TimeoutError):
    """Raised when middleware and handlers do not settle within the timeout."""

    def __init__(self, event_name: str, timeout: float) -> None:
        self.event_name = event_name
        self.timeout = timeout
        super().__init__(f"Processing {event_name} timed out after {timeout}s")


class RedeliveryError(ProcessingError):
    """Describes a redelivered message that was rejected without processing."""

    def __init__(self, event_name: str, message_id: str | None) -> None:
        self.event_name = event_name
        self.message_id = message_id
        super().__init__(f"Message {message_id} for {event_name} was redelivered")


class DeadLetterConsumerError(ServiceBusError):
    """Raised when a dead letter consumer has to shut down."""

    pass


class DeadLetterDecisionError(ServiceBusError):
    """Raised by decision functions that decline to act on a dead letter."""

    pass


__all__ = [
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
