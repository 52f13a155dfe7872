"""CBOR encoding of event records on the wire."""

from __future__ import annotations

from typing import Any

import cbor2


def encode_event(event: dict[str, Any]) -> bytes:
    return cbor2.dumps(event)


def decode_event(data: bytes) -> dict[str, Any]:
    try:
        obj = cbor2.loads(data)
    except cbor2.CBORDecodeError as e:
        raise ValueError(f"undecodable payload: {e}") from e
    if not isinstance(obj, dict):
        raise TypeError("event record must be a CBOR map")
    return obj
