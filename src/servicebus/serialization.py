"""
JSON serialization utilities for message bodies.

Envelopes are encoded by pydantic, but dead letter processors and the
consumption pipeline work on raw bodies and plain dictionaries. This module
keeps that codec in one place.

Example:
    >>> from servicebus.serialization import json_dumps, decode_body
    >>> from uuid import UUID
    >>>
    >>> body = json_dumps({"id": UUID(int=1)}).encode("utf-8")
    >>> decode_body(body)
    {'id': '00000000-0000-0000-0000-000000000001'}
"""

import json
from datetime import date, datetime
from typing import Any
from uuid import UUID


class ServiceBusJSONEncoder(json.JSONEncoder):
    """
    JSON encoder that handles UUID and datetime objects.

    - UUID objects: converted to their string representation
    - datetime/date objects: converted to ISO 8601 strings
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        return super().default(obj)


def json_dumps(obj: Any) -> str:
    """Serialize object to JSON string with UUID and datetime support."""
    return json.dumps(obj, cls=ServiceBusJSONEncoder)


def json_loads(s: str | bytes) -> Any:
    """
    Deserialize a JSON document.

    UUID and datetime strings are NOT converted back to their original
    types; that is the handler's responsibility.
    """
    return json.loads(s)


def decode_body(body: bytes) -> Any:
    """
    Decode a UTF-8 JSON message body.

    Raises:
        UnicodeDecodeError: If the body is not valid UTF-8
        json.JSONDecodeError: If the body is not valid JSON
    """
    return json_loads(body.decode("utf-8"))


__all__ = [
    "ServiceBusJSONEncoder",
    "decode_body",
    "json_dumps",
    "json_loads",
]
