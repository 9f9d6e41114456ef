"""Canonical JSON encoding for stored form records."""

from __future__ import annotations

import json
import math
from typing import Any


class CanonicalJsonTypeError(TypeError):
    """Raised when an object cannot be serialized to canonical JSON."""


class RecordDecodeError(ValueError):
    """Raised when stored text is not a decodable record document."""


def _validate(obj: Any, path: str = "$") -> None:
    if isinstance(obj, dict):
        for key, value in obj.items():
            if not isinstance(key, str):
                raise CanonicalJsonTypeError(
                    f"Unsupported key type at {path}: {type(key).__name__}"
                )
            _validate(value, f"{path}.{key}")
        return
    if isinstance(obj, (list, tuple)):
        for idx, item in enumerate(obj):
            _validate(item, f"{path}[{idx}]")
        return
    if obj is None:
        return
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"Non-finite float at {path}: {obj!r}")
        return
    if isinstance(obj, (str, int, bool)):
        return
    raise CanonicalJsonTypeError(
        f"Unsupported type at {path}: {type(obj).__name__}"
    )


def canonical_dumps(obj: Any) -> str:
    """Serialize an object to deterministic canonical JSON.

    Rules:
    - Sort dict keys recursively.
    - Preserve list order.
    - UTF-8 with non-ASCII preserved.
    - No extra whitespace.
    """
    _validate(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        allow_nan=False,
    )


def encoded_size(text: str) -> int:
    """Size in bytes of an encoded document as the cache tiers count it."""
    return len(text.encode("utf-8"))


def decode_record(text: Any) -> dict:
    if not isinstance(text, str) or not text.strip():
        raise RecordDecodeError("empty record payload")
    try:
        value = json.loads(text)
    except ValueError as exc:
        raise RecordDecodeError(f"invalid record json: {exc}") from exc
    if not isinstance(value, dict):
        raise RecordDecodeError(f"record must be an object, got {type(value).__name__}")
    return value
