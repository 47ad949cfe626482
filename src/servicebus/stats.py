"""Operational counters for a bus."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any


@dataclass
class BusStats:
    """Statistics for bus operations.

    A plain data container shared by the publisher, the consumption
    pipelines and the dead letter consumers of one bus. All updates happen
    on the event loop thread.

    Attributes:
        messages_published: Envelopes published through send_message().
        messages_consumed: Deliveries received by event consumers.
        messages_acked: Deliveries acknowledged after successful processing.
        messages_nacked: Deliveries rejected to the dead letter exchange,
            including redeliveries and timeouts.
        messages_redelivered: Deliveries rejected because the broker flagged
            them as redelivered.
        messages_timed_out: Deliveries whose processing exceeded the timeout.
        dead_letters_deleted: Dead letters acknowledged and dropped.
        dead_letters_reenqueued: Dead letters sent back to their original queue.
        dead_letters_sent_to_back: Dead letters moved to the tail of the
            dead letter queue.
        dead_letter_consumers_cancelled: Dead letter consumers shut down by an
            unrecognised or failed decision.
        last_publish_at: Time of the last successful publish.
        last_consume_at: Time of the last delivery.
        last_error_at: Time of the last processing failure.
        connected_at: When the current connection was established.
    """

    messages_published: int = 0
    messages_consumed: int = 0
    messages_acked: int = 0
    messages_nacked: int = 0
    messages_redelivered: int = 0
    messages_timed_out: int = 0

    dead_letters_deleted: int = 0
    dead_letters_reenqueued: int = 0
    dead_letters_sent_to_back: int = 0
    dead_letter_consumers_cancelled: int = 0

    last_publish_at: datetime | None = None
    last_consume_at: datetime | None = None
    last_error_at: datetime | None = None
    connected_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        """Statistics as a JSON-friendly dictionary (timestamps as ISO strings)."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data


__all__ = ["BusStats"]
