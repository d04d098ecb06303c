import hashlib
import json
import math
from typing import Any

from pydantic_core import to_jsonable_python


def _canonical(value: Any) -> Any:
    """Reduce a value to JSON types with a stable ordering for unordered containers"""
    if isinstance(value, (set, frozenset)):
        items = [_canonical(v) for v in value]
        return sorted(items, key=lambda v: json.dumps(v, sort_keys=True, separators=(",", ":")))
    if isinstance(value, dict):
        for key in value:
            if not isinstance(key, str):
                raise TypeError(f"Mapping keys must be strings, got {type(key).__name__} key {key!r}")
        return {k: _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        # 1.0 == 1
        return int(value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return _canonical(to_jsonable_python(value))


def fingerprint(value: Any) -> str:
    """
    Deterministic SHA-256 digest of a job input.

    Mapping key order does not affect the result; sequence order does.
    Mapping keys must be strings, as in JSON. Integral floats hash like the
    equal int, while booleans stay distinct from 0 and 1.
    """
    payload = json.dumps(_canonical(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
