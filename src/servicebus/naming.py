"""Deterministic exchange and queue names.

Binding, publishing and dead letter rerouting all derive their names from
here, so a message published under an event always lands in the queue that
handlers bound to that event consume from.

Example:
    >>> queue_name("dev", "svc", "orders.created")
    'dev.svc.orders.created'
    >>> dead_letter_queue_name("dev", "svc")
    'dev.svc'
"""


def queue_name(environment: str, service_name: str, event_name: str) -> str:
    """Name of the durable queue consuming ``event_name`` for a service."""
    return f"{environment}.{service_name}.{event_name}"


def dead_letter_exchange_name(environment: str, service_name: str) -> str:
    """Name of the topic exchange rejected messages are routed to."""
    return f"{environment}.{service_name}"


def dead_letter_queue_name(environment: str, service_name: str) -> str:
    # Shares its name with the dead letter exchange.
    return dead_letter_exchange_name(environment, service_name)


__all__ = [
    "queue_name",
    "dead_letter_exchange_name",
    "dead_letter_queue_name",
]
