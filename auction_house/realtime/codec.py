"""JSON encoding for realtime frames and signed token claims."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any

import orjson

_ORJSON_OPTIONS = orjson.OPT_SORT_KEYS | orjson.OPT_NAIVE_UTC


def _default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"cannot serialize {type(value).__name__}")


def canonical_dumps(payload: Any) -> bytes:
    """Return canonical JSON bytes with sorted keys and stable formatting."""
    return orjson.dumps(payload, default=_default, option=_ORJSON_OPTIONS)


def encode_frame(event: str, payload: dict[str, Any]) -> str:
    return canonical_dumps({"event": event, "payload": payload}).decode("utf-8")


def decode_frame(raw: str | bytes) -> dict[str, Any]:
    try:
        message = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise ValueError("frame is not valid JSON") from exc
    if not isinstance(message, dict):
        raise ValueError("frame must be a JSON object")
    return message
