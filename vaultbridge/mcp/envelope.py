"""
JSON-RPC envelope classification.

An envelope with a method and no id is a notification, with both it is a
request, and with an id plus result/error but no method it is a reply.
A null id counts as no id.
"""

import json
from typing import Any

from .errors import ParseError, ProtocolError


def has_id(envelope: dict) -> bool:
    return envelope.get("id") is not None


def is_notification(envelope: dict) -> bool:
    return "method" in envelope and not has_id(envelope)


def is_request(envelope: dict) -> bool:
    return "method" in envelope and has_id(envelope)


def is_reply(envelope: dict) -> bool:
    return (
        "method" not in envelope
        and has_id(envelope)
        and ("result" in envelope or "error" in envelope)
    )


def decode(raw: str | bytes) -> dict:
    """
    Parse one frame into an envelope.

    Raises:
        ParseError: If the frame is not valid JSON
        ProtocolError: If the frame is valid JSON but not an object
    """
    try:
        message: Any = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"Parse error: {e}") from e
    if not isinstance(message, dict):
        raise ProtocolError("Invalid Request: envelope must be a JSON object")
    return message


def encode(envelope: dict) -> str:
    return json.dumps(envelope, ensure_ascii=False)
