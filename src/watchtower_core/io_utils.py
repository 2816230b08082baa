"""JSON serialization and hashing helpers.

All JSON goes through orjson. ``canonical_json`` is the single serialization
used for content-derived identifiers (receipt, snapshot, report and alert
ids): keys sorted at every nesting level, no whitespace, UTF-8 bytes.
"""
from __future__ import annotations

import hashlib
from typing import Any

import orjson


def json_dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode("utf-8")


def json_loads(s: str | bytes) -> Any:
    return orjson.loads(s)


def canonical_json(obj: Any) -> bytes:
    """Serialize *obj* deterministically: sorted keys, compact, UTF-8."""
    return orjson.dumps(obj, option=orjson.OPT_SORT_KEYS)


def sha256_hex(data: bytes) -> str:
    """Return the lowercase hex SHA-256 digest of *data*."""
    return hashlib.sha256(data).hexdigest()


def canonical_hash(obj: Any) -> str:
    """SHA-256 of the canonical serialization of *obj*."""
    return sha256_hex(canonical_json(obj))
