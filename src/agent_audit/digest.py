# digest.py
# Canonical serialization and SHA-256 content addressing.
#
# Every identity in the log is derived here. An event's id is the digest of
# the event record with its own id removed, so any party holding the record
# can recompute it and must arrive at the same hex string.
#
# stdlib only.

import hashlib
import json
import math
from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any


class _Absent:
    """Marker for a key that must not appear in canonical output."""

    _instance = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT: Any = _Absent()

# Digest value standing in for "no file at this path".
NULL_DIGEST = "null"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _format_float(value: float) -> str:
    # Shortest round-trip digits, laid out the way ECMAScript Number#toString
    # does: plain notation for 1e-7 < |x| < 1e21, otherwise d.ddde±n.
    if math.isnan(value) or math.isinf(value):
        raise ValueError(f"Out of range float values are not JSON compliant: {value!r}")
    if value == 0:
        return "0"

    sign = "-" if value < 0 else ""
    _, digit_tuple, exponent = Decimal(repr(abs(value))).as_tuple()
    digits = "".join(map(str, digit_tuple)).rstrip("0")
    exponent += len(digit_tuple) - len(digits)
    k = len(digits)
    n = exponent + k

    if k <= n <= 21:
        text = digits + "0" * (n - k)
    elif 0 < n <= 21:
        text = f"{digits[:n]}.{digits[n:]}"
    elif -6 < n <= 0:
        text = "0." + "0" * -n + digits
    else:
        mantissa = digits if k == 1 else f"{digits[0]}.{digits[1:]}"
        text = f"{mantissa}e{'+' if n - 1 >= 0 else '-'}{abs(n - 1)}"
    return sign + text


def _encode(value: Any) -> str:
    if value is None or isinstance(value, (bool, str)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, Mapping):
        items = sorted(
            ((str(key), item) for key, item in value.items() if item is not ABSENT),
            key=lambda pair: pair[0],
        )
        return "{" + ",".join(f"{_encode(key)}:{_encode(item)}" for key, item in items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_encode(item) for item in value) + "]"
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def canonical_json(value: Any) -> str:
    """
    Deterministic, whitespace-free JSON text for `value`.

    Keys are sorted, keys bound to ABSENT are dropped, arrays keep their
    order. The output depends only on the value, never on insertion order.
    Numbers use their minimal literal (1.0 -> 1, 1e-07 -> 1e-7), so a JSON
    writer on any platform produces the same bytes. NaN and infinities are
    rejected because they have no JSON literal.
    """
    return _encode(value)


def content_digest(value: Any) -> str:
    """Lowercase hex SHA-256 of the canonical serialization of `value`."""
    return _sha256(canonical_json(value))


def event_id(record: Mapping[str, Any]) -> str:
    """Recompute an event's id: the digest of the record minus its `id` field."""
    return content_digest({key: item for key, item in record.items() if key != "id"})


def file_digest(data: bytes | str) -> str:
    """SHA-256 of raw file content, as reported in fs.diff / fs.snapshot payloads."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def workspace_hash(entries: Mapping[str, str] | Iterable[tuple[str, str]]) -> str:
    """
    Commitment over a set of tracked (path, digest) pairs.

    Paths are sorted lexicographically and rendered as "path:digest",
    joined with ";". The result is independent of the order in which the
    pairs were produced.
    """
    pairs = dict(entries.items() if isinstance(entries, Mapping) else entries)
    return _sha256(";".join(f"{path}:{pairs[path]}" for path in sorted(pairs)))
