"""
Stock dead letter decision functions.

Pass any of these to :meth:`Bus.listen_dead_letter_queue`::

    await bus.listen_dead_letter_queue(processors.reenqueue_by_name("orders.created"))

Processors that decline a message raise :class:`DeadLetterDecisionError`,
which shuts the consumer down and leaves the message in the queue.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable
from typing import Any, TextIO

from aio_pika.abc import AbstractIncomingMessage

from servicebus.deadletter import DeadLetterAction
from servicebus.exceptions import DeadLetterDecisionError
from servicebus.serialization import decode_body

PROMPT_CHOICES = {
    "1": DeadLetterAction.REENQUEUE,
    "2": DeadLetterAction.DELETE,
    "3": DeadLetterAction.SEND_TO_BACK,
}

PROMPT_MENU = (
    "What would you like to do with this message:\n"
    "1 - Re-enqueue on original queue\n"
    "2 - Delete\n"
    "3 - Send to back of dead letter queue\n"
    "Any other entry leaves the message in place\n"
)


def delete_all(message: AbstractIncomingMessage) -> DeadLetterAction:
    return DeadLetterAction.DELETE


def reenqueue_all(message: AbstractIncomingMessage) -> DeadLetterAction:
    return DeadLetterAction.REENQUEUE


def _by_name(
    event_name: str, action: DeadLetterAction
) -> Callable[[AbstractIncomingMessage], DeadLetterAction]:
    def decide(message: AbstractIncomingMessage) -> DeadLetterAction:
        envelope = decode_body(message.body)
        actual = envelope.get("event") if isinstance(envelope, dict) else None
        if actual != event_name:
            raise DeadLetterDecisionError(f"Required {event_name} does not match {actual}")
        return action

    decide.__name__ = f"{action.name.lower()}_{event_name}"
    return decide


def delete_by_name(event_name: str) -> Callable[[AbstractIncomingMessage], DeadLetterAction]:
    """Delete dead letters of ``event_name``; stop at the first other event."""
    return _by_name(event_name, DeadLetterAction.DELETE)


def reenqueue_by_name(event_name: str) -> Callable[[AbstractIncomingMessage], DeadLetterAction]:
    """Re-enqueue dead letters of ``event_name``; stop at the first other event."""
    return _by_name(event_name, DeadLetterAction.REENQUEUE)


def interactive_prompt(
    stream_in: TextIO | None = None,
    stream_out: TextIO | None = None,
) -> Callable[[AbstractIncomingMessage], Any]:
    """
    Ask an operator what to do with each dead letter.

    Prints the decoded envelope and a menu, then reads one line. The line
    is read in a worker thread so other consumers keep running.

    Args:
        stream_in: Where answers are read from (default: stdin)
        stream_out: Where the message and menu are written (default: stdout)
    """

    async def decide(message: AbstractIncomingMessage) -> DeadLetterAction:
        source = stream_in or sys.stdin
        sink = stream_out or sys.stdout

        sink.write(f"{decode_body(message.body)!r}\n")
        sink.write(PROMPT_MENU)
        sink.flush()

        answer = (await asyncio.to_thread(source.readline)).strip()
        try:
            return PROMPT_CHOICES[answer]
        except KeyError:
            raise DeadLetterDecisionError(f"selected other: {answer!r}") from None

    return decide


__all__ = [
    "PROMPT_CHOICES",
    "delete_all",
    "delete_by_name",
    "interactive_prompt",
    "reenqueue_all",
    "reenqueue_by_name",
]
