"""
Simulator message framing.

Event frames are Socket.IO-style text: "42" followed by a JSON array
[event_name, payload]. A frame whose payload is null carries no data and is
answered with a manual-driving handshake.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional

EVENT_PREFIX = "42"
TELEMETRY_EVENT = "telemetry"
STEER_EVENT = "steer"
MANUAL_MESSAGE = '42["manual",{}]'


class ProtocolError(ValueError):
    """Frame could not be decoded."""


@dataclass
class Frame:
    """Decoded event frame. payload is None when the frame carries no data."""
    is_event: bool
    event: Optional[str] = None
    payload: Optional[Any] = None


def extract_json(data: str) -> str:
    """
    Return the JSON array inside an event frame, or "" when there is none.

    A frame containing "null" is treated as empty.
    """
    if "null" in data:
        return ""
    start = data.find("[")
    end = data.rfind("}]")
    if start != -1 and end != -1:
        return data[start:end + 2]
    return ""


def decode_frame(message: str) -> Frame:
    """
    Decode one text frame.

    Raises:
        ProtocolError: the frame has event data that is not valid JSON.
    """
    if len(message) <= 2 or not message.startswith(EVENT_PREFIX):
        return Frame(is_event=False)

    body = extract_json(message)
    if not body:
        return Frame(is_event=True)

    try:
        decoded = json.loads(body)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"invalid event JSON: {e}") from e
    if not isinstance(decoded, list) or not decoded or not isinstance(decoded[0], str):
        raise ProtocolError("event frame must be [name, payload]")
    payload = decoded[1] if len(decoded) > 1 else None
    return Frame(is_event=True, event=decoded[0], payload=payload)


def encode_event(event: str, payload: dict) -> str:
    """Encode an outgoing event frame."""
    return EVENT_PREFIX + json.dumps([event, payload], separators=(",", ":"))


def encode_steer(payload: dict) -> str:
    return encode_event(STEER_EVENT, payload)
