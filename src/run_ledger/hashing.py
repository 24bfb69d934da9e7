"""
Hashing utilities for run-ledger.

Step inputs and outputs are stored as short content hashes by default
(full payloads are opt-in), so the hash must be stable regardless of
dict key order.
"""

from __future__ import annotations

import hashlib
from typing import Any, Literal

import orjson
from blake3 import blake3

HashAlgorithm = Literal["blake3", "sha256"]

# Length of the hex digest kept for step input/output hashes.
DEFAULT_HASH_LENGTH = 16


def canonicalize(obj: Any) -> Any:
    """
    Convert complex objects into JSON-friendly, deterministic structures.
    """
    if isinstance(obj, dict):
        return {str(k): canonicalize(obj[k]) for k in sorted(obj, key=str)}
    if isinstance(obj, (list, tuple)):
        return [canonicalize(v) for v in obj]
    if isinstance(obj, (set, frozenset)):
        return sorted((canonicalize(v) for v in obj), key=repr)
    if hasattr(obj, "to_dict") and callable(obj.to_dict):
        return canonicalize(obj.to_dict())
    return obj


def stable_json_dumps(obj: Any) -> str:
    """Dump an object to JSON with stable key ordering for hashing."""
    return orjson.dumps(canonicalize(obj), option=orjson.OPT_SORT_KEYS).decode("utf-8")


def compute_hash(
    data: str | bytes,
    algorithm: HashAlgorithm = "blake3",
    truncate: int | None = None,
) -> str:
    """
    Compute a hex digest using the specified algorithm.

    Args:
        data: Input data to hash (string or bytes)
        algorithm: "blake3" (default) or "sha256"
        truncate: Truncate output to N characters

    Returns:
        Hexadecimal hash string
    """
    if isinstance(data, str):
        data = data.encode("utf-8")

    if algorithm == "blake3":
        result = blake3(data).hexdigest()
    elif algorithm == "sha256":
        result = hashlib.sha256(data).hexdigest()
    else:
        raise ValueError(f"Unknown algorithm: {algorithm}")

    return result[:truncate] if truncate else result


def hash_data(data: Any, length: int = DEFAULT_HASH_LENGTH) -> str:
    """
    Hash a step payload for provenance.

    Strings are hashed as-is; anything else goes through canonical JSON.
    """
    content = data if isinstance(data, str) else stable_json_dumps(data)
    return compute_hash(content, truncate=length)


__all__ = [
    "HashAlgorithm",
    "DEFAULT_HASH_LENGTH",
    "canonicalize",
    "stable_json_dumps",
    "compute_hash",
    "hash_data",
]
