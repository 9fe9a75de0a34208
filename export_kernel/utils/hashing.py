"""
Deterministic hashing utilities.

All hashing in the export pipeline must be deterministic and reproducible:
idempotency keys are re-derived on every pull and re-export, and the audit
chain is re-hashed on verification.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

GENESIS = "GENESIS"


def _json_serializer(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        # Normalize so 10.50 and 10.5 hash identically
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    - Keys are sorted alphabetically
    - No whitespace
    - Decimal, datetime, date and UUID serialize consistently
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_payload(payload: dict) -> str:
    """SHA-256 of the canonical JSON form of ``payload`` (64 hex chars)."""
    return sha256_hex(canonicalize_json(payload))


def compute_export_key(prefix: str, source_type: str, source_id: str) -> str:
    """
    Deterministic idempotency key for one source record.

    ``<prefix>-<first 20 hex chars of sha256("source_type:source_id")>``.
    The same source row always yields the same key, whichever batch or
    stage computes it.
    """
    digest = sha256_hex(f"{source_type}:{source_id}")
    return f"{prefix}-{digest[:20]}"


def hash_audit_entry(
    batch_id: str | None,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Chain hash for an audit entry.

    Covers the batch reference, action, payload hash and the previous
    entry's hash, so editing or removing any entry breaks every hash after
    it.
    """
    components = [
        str(batch_id) if batch_id is not None else "",
        action,
        payload_hash,
        prev_hash or GENESIS,
    ]
    return sha256_hex("|".join(components))
