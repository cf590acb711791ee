"""Decoding of BPUP update datagrams."""

from __future__ import annotations

import json

from pydantic import ValidationError

from bondhome.push.errors import DecodeError
from bondhome.push.types import Update


def decode_update(data: bytes) -> Update:
    """Decode one datagram into an :class:`Update`.

    Surrounding whitespace and line terminators are trimmed before
    parsing. Unknown fields are ignored.

    Args:
        data: Raw datagram payload.

    Returns:
        The decoded update.

    Raises:
        DecodeError: If the payload is not UTF-8 JSON describing an object
            with the expected field types.
    """
    try:
        text = data.decode("utf-8").strip()
    except UnicodeDecodeError as exc:
        raise DecodeError(data.decode("utf-8", errors="replace").strip(), "not valid UTF-8") from exc

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DecodeError(text, str(exc)) from exc

    if not isinstance(raw, dict):
        raise DecodeError(text, f"expected a JSON object, got {type(raw).__name__}")

    try:
        return Update.model_validate(raw)
    except ValidationError as exc:
        raise DecodeError(text, f"{exc.error_count()} invalid field(s)") from exc


def encode_update(update: Update) -> bytes:
    """Encode *update* the way the bridge puts it on the wire."""
    payload = update.model_dump(by_alias=True, exclude_defaults=True)
    return (json.dumps(payload, separators=(",", ":")) + "\n").encode("utf-8")
