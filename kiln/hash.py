"""Hash utilities for fingerprints.

Fingerprints are SHA-256 digests over a canonical serialization. Dicts are
serialized with sorted keys and no whitespace so the same logical value
always produces the same bytes, regardless of insertion order:

    digest_json({"b": 1, "a": [2]}) == digest_json({"a": [2], "b": 1})
"""

import hashlib
import json
from typing import Any


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_json(value: Any) -> str:
    """Deterministic JSON. Paths and other objects fall back to ``str()``."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def digest_json(value: Any) -> str:
    return sha256_hex(canonical_json(value).encode())


def short(digest: str, size: int = 12) -> str:
    """Abbreviated digest for log lines."""
    return digest[:size]
