"""
Integration tests for the Bus against RabbitMQ.

These tests verify actual broker behaviour:
- Topology declaration on init() and queue declaration on bind
- Publish and consume round trip through the root exchange
- Failed deliveries landing in the dead letter queue
- Re-enqueueing a dead letter back to its original queue

Every test uses its own service name so durable queues never collide.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio

from servicebus import Bus, BusConfig, DeadLetterAction, processors

pytestmark = [pytest.mark.integration, pytest.mark.rabbitmq]

EVENT = "orders.created"


@pytest_asyncio.fixture
async def bus(rabbitmq_url: str) -> AsyncGenerator[Bus, None]:
    config = BusConfig(
        connection_url=rabbitmq_url,
        service_name=f"svc-{uuid4().hex[:8]}",
        environment="test",
        timeout=5.0,
        enable_tracing=False,
    )
    bus = Bus(config)
    await bus.init()

    yield bus

    if bus.is_connected:
        await bus.disconnect()


async def wait_until(predicate: Any, timeout: float = 10.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.05)

    await asyncio.wait_for(poll(), timeout=timeout)


class TestTopology:
    """Tests for broker-side declarations."""

    @pytest.mark.asyncio
    async def test_bind_declares_queue(self, bus: Bus) -> None:
        async def on_order_created(message: Any) -> None:
            pass

        await bus.bind_event(EVENT, on_order_created)

        channel = await bus.init()
        queue = await channel.get_queue(bus.generate_queue_name(EVENT))
        assert queue.name == bus.generate_queue_name(EVENT)

    @pytest.mark.asyncio
    async def test_dead_letter_queue_declared_on_init(self, bus: Bus) -> None:
        channel = await bus.init()

        queue = await channel.get_queue(bus.generate_dead_letter_queue_name())

        assert queue.name == bus.generate_dead_letter_queue_name()


class TestRoundTrip:
    """Tests for publish and consume."""

    @pytest.mark.asyncio
    async def test_published_message_reaches_handler(self, bus: Bus) -> None:
        received: list[Any] = []

        async def on_order_created(message: Any) -> None:
            received.append(message)

        await bus.bind_event(EVENT, on_order_created)
        await bus.send_message(EVENT, {"value": {"id": 42}})

        await wait_until(lambda: received)

        assert received[0]["event"] == EVENT
        assert received[0]["realm"] == bus.config.service_name
        assert received[0]["value"] == {"id": 42}
        await wait_until(lambda: bus.stats.messages_acked == 1)


class TestDeadLetters:
    """Tests for failure routing and recovery."""

    @pytest.mark.asyncio
    async def test_failed_message_is_reenqueued(self, bus: Bus) -> None:
        attempts: list[Any] = []
        dead_letters: list[Any] = []

        async def flaky(message: Any) -> None:
            attempts.append(message)
            if len(attempts) == 1:
                raise RuntimeError("first attempt fails")

        def decide(message: Any) -> DeadLetterAction:
            dead_letters.append(message)
            return processors.reenqueue_all(message)

        await bus.bind_event(EVENT, flaky)
        await bus.listen_dead_letter_queue(decide)
        await bus.send_message(EVENT, {"value": {"id": 1}})

        await wait_until(lambda: len(attempts) == 2)

        assert len(dead_letters) == 1
        assert attempts[1]["value"] == {"id": 1}
        await wait_until(lambda: bus.stats.dead_letters_reenqueued == 1)
