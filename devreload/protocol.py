"""
protocol.py: reload messages exchanged between the server and the page.

On the wire every message is a two-element JSON array:

    ["update", "/abs/path/to/changed/file"]
    ["error",  "diagnostic text"]

The in-page script is cached by the browser across reloads, so this shape
must stay stable.
"""

import json
from dataclasses import dataclass


UPDATE = "update"
ERROR = "error"


class MessageError(ValueError):
    """Raised when a payload is not a well-formed reload message."""


class UnknownMessageType(MessageError):
    """Raised for a well-formed message whose type is not recognised."""

    def __init__(self, kind):
        super().__init__(f"Bad type {kind!r}")
        self.kind = kind


@dataclass(frozen=True)
class Update:
    """A successful rebuild (or plain change) of ``path``."""
    path: str


@dataclass(frozen=True)
class Failure:
    """A failed rebuild; ``message`` is shown to the user verbatim."""
    message: str


def encode_message(result):
    """Return the JSON text for an ``Update`` or ``Failure``."""
    if isinstance(result, Update):
        return json.dumps([UPDATE, result.path])
    if isinstance(result, Failure):
        return json.dumps([ERROR, result.message])
    raise TypeError(f"not a build result: {result!r}")


def decode_message(raw):
    """Parse wire text (str or bytes) back into an ``Update`` or ``Failure``.

    Raises ``UnknownMessageType`` when the first element is not a known
    type and ``MessageError`` for anything else that is malformed.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MessageError(f"message is not UTF-8: {e}") from e
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MessageError(f"message is not JSON: {e}") from e

    if not isinstance(data, list) or len(data) != 2:
        raise MessageError("message must be a two-element array")
    kind, payload = data
    if not isinstance(payload, str):
        raise MessageError("message payload must be a string")

    if kind == UPDATE:
        return Update(payload)
    if kind == ERROR:
        return Failure(payload)
    raise UnknownMessageType(kind)
