"""
JSON encoder/decoder for the hub wire envelope.

Every frame is a JSON object of the form ``{"type": str, ...fields}`` sent as
a WebSocket text frame.
"""

import json
from typing import Any

# Upper bound on a single inbound frame. Appearance blobs are replicated
# verbatim to every peer, so an oversized one would be amplified per member.
MAX_MESSAGE_SIZE = 16 * 1024


class DecodeError(Exception):
    """Error raised when an inbound frame is not a valid envelope."""


def encode(data: dict[str, Any]) -> str:
    return json.dumps(data)


def decode(raw: str) -> dict[str, Any]:
    """
    Decode a text frame into an envelope dict.

    Raises DecodeError if the frame is too large, not JSON, not an object,
    or has no string ``type`` field.
    """
    byte_len = len(raw.encode("utf-8"))
    if byte_len > MAX_MESSAGE_SIZE:
        raise DecodeError(f"message too large: {byte_len} bytes (max {MAX_MESSAGE_SIZE})")
    try:
        result = json.loads(raw)
    except json.JSONDecodeError as e:
        raise DecodeError(f"failed to decode JSON: {e}") from e

    if not isinstance(result, dict):
        raise DecodeError(f"expected object, got {type(result).__name__}")
    if not isinstance(result.get("type"), str):
        raise DecodeError("message has no type")

    return result
