"""
Deterministic hashing utilities.

Every hash in the budget kernel (audit chain links, policy table checksums)
goes through this module so that the same logical content always produces
the same digest.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

GENESIS = "GENESIS"


def _json_serializer(obj: Any) -> Any:
    """
    Serialize types json does not handle natively.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        # 50000 and 50000.00 must hash identically
        return format(obj.normalize(), "f")
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to a canonical JSON string.

    Keys sorted, no whitespace, Decimal/datetime/UUID/Enum rendered
    consistently.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: dict | list) -> str:
    """Compute the hex SHA-256 of a payload's canonical JSON form."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_audit_entry(
    seq: int,
    action_type: str,
    entity_type: str,
    entity_id: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Compute the chain hash for one audit log row.

    The hash covers the row's position, classification, payload digest and
    the previous row's hash, so editing or removing any row breaks every
    hash after it.

    Args:
        seq: Monotonic audit sequence number.
        action_type: allocation, disbursement, approval, ...
        entity_type: budget, organization, request, ...
        entity_id: ID of the entity.
        payload_hash: hash_payload() of the row's changes + metadata.
        prev_hash: Hash of the previous row (None for the first row).

    Returns:
        Hex-encoded SHA-256 hash.
    """
    components = [
        str(seq),
        action_type,
        entity_type,
        str(entity_id),
        payload_hash,
        prev_hash or GENESIS,
    ]
    data = "|".join(components)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
