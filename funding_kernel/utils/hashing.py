"""
Deterministic hashing utilities.

The audit chain depends on identical inputs producing identical hashes
across processes and backends, so payloads are canonicalized first.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Serialize types that ``json`` does not handle natively.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        # Money is always 2dp; keep the scale so 100.00 and 100 differ from 1E+2
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(str(v) for v in obj)

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to a canonical JSON string.

    Keys are sorted, whitespace is removed, and Decimal, datetime, UUID and
    enum values are rendered consistently.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def to_json_safe(data: Any) -> Any:
    """Round-trip through canonical JSON so a payload can be stored in a JSON column."""
    return json.loads(canonicalize_json(data))


def hash_payload(payload: dict) -> str:
    """
    Compute SHA-256 hash of a payload.

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_audit_event(
    entity_type: str,
    entity_id: str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Compute the chained hash for an audit event.

    The hash includes all key fields plus the previous event's hash,
    creating a tamper-evident chain.

    Args:
        entity_type: Type of entity being audited.
        entity_id: ID of the entity.
        action: Action being recorded.
        payload_hash: Hash of the event payload.
        prev_hash: Hash of the previous audit event (None for genesis).

    Returns:
        Hex-encoded SHA-256 hash.
    """
    components = [
        entity_type,
        str(entity_id),
        action,
        payload_hash,
        prev_hash or "GENESIS",
    ]
    data = "|".join(components)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
