"""
Shared test doubles for the servicebus library.

Usage:
    from tests.fixtures import (
        FakeBroker,
        FakeIncomingMessage,
        bus_headers,
        envelope_body,
    )
"""

from tests.fixtures.broker import (
    FakeBroker,
    FakeIncomingMessage,
    bus_headers,
    envelope_body,
)

__all__ = [
    "FakeBroker",
    "FakeIncomingMessage",
    "bus_headers",
    "envelope_body",
]
