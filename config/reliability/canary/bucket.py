"""Deterministic rollout bucketing for the matching canary.

bucket = int(sha256("salt|actorType|actorId|idempotencyKey|requestedAt")[:8], 16) % 10000
"""
import hashlib
import math
from typing import Any, Optional

BUCKET_SPACE = 10000
DIGEST_PREFIX_HEX = 8


def _normalize(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def bucket_key(salt: str, actor_type: Any, actor_id: Any,
               idempotency_key: Any, requested_at: str) -> str:
    return "|".join([
        salt,
        _normalize(actor_type, "unknown"),
        _normalize(actor_id, "unknown"),
        _normalize(idempotency_key, "none"),
        requested_at,
    ])


def compute_bucket(salt: Any, actor_type: Any, actor_id: Any,
                   idempotency_key: Any, requested_at: Any) -> Optional[int]:
    """Return the bucket in [0, 9999], or None when salt/requested_at are malformed."""
    if not isinstance(salt, str) or not isinstance(requested_at, str):
        return None
    key = bucket_key(salt, actor_type, actor_id, idempotency_key, requested_at)
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:DIGEST_PREFIX_HEX]
    try:
        n = int(digest, 16)
    except ValueError:
        return None
    if not math.isfinite(n):
        return None
    return n % BUCKET_SPACE


def bucket_bps(salt: Any, actor_type: Any, actor_id: Any,
               idempotency_key: Any, requested_at: Any) -> int:
    bucket = compute_bucket(salt, actor_type, actor_id, idempotency_key, requested_at)
    return 0 if bucket is None else bucket


def in_rollout_bucket(bucket: int, rollout_bps: int) -> bool:
    return bucket < rollout_bps
