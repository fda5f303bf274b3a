from __future__ import annotations

import hashlib
import json
from typing import Any, Dict


GENESIS_HASH = "0" * 64


def canonical_dumps(obj: Dict[str, Any]) -> str:
    # Deterministic JSON string: sorted keys, no whitespace
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def hash_chain(prev_hash: str, payload: Dict[str, Any]) -> str:
    return sha256_hex(prev_hash + canonical_dumps(payload))


def derive_idempotency_key(entry_id: str, operation: str, attempt: int) -> str:
    """
    Gateway idempotency key for one logical attempt of one operation on one escrow entry.
    Network-level retries inside the same attempt reuse the key.
    """
    return sha256_hex(f"{entry_id}:{operation}:{attempt}")[:48]
