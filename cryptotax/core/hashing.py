"""
Hashing Module - SHA256 Audit Seals

Canonical JSON serialization and SHA256 hashing for tax reports and ledger
snapshots. A report carries the hash of its own content so a later reader
can verify nothing was altered after generation.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

import dataclasses
import hashlib
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict


def _to_jsonable(o: Any) -> Any:
    if isinstance(o, Decimal):
        # 1.50 and 1.5 must hash identically
        return format(o.normalize(), 'f')
    if isinstance(o, Enum):
        return o.value
    if isinstance(o, (date, datetime)):
        return o.isoformat()
    if dataclasses.is_dataclass(o) and not isinstance(o, type):
        return dataclasses.asdict(o)
    if hasattr(o, 'model_dump'):
        return o.model_dump(mode='json', by_alias=True)
    if isinstance(o, (set, frozenset, tuple)):
        return list(o)
    raise TypeError(f"Object of type {type(o).__name__} is not JSON serializable")


def canonical_json_dumps(obj: Any) -> str:
    """
    Serialize object to canonical JSON string.

    Ensures deterministic serialization for hashing:
    - Keys sorted alphabetically
    - No whitespace
    - Decimals written as normalized strings (no float rounding)
    - Dates, enums, dataclasses and pydantic models converted

    Example:
        >>> canonical_json_dumps({"amount": Decimal("123.450"), "date": date(2024, 1, 15)})
        '{"amount":"123.45","date":"2024-01-15"}'
    """
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(',', ':'),
        default=_to_jsonable,
        ensure_ascii=True
    )


def calculate_sha256(data: Any) -> str:
    """
    Calculate SHA256 hash of data.

    Returns:
        SHA256 hex digest prefixed with 'sha256:'
    """
    json_str = canonical_json_dumps(data)
    hash_obj = hashlib.sha256(json_str.encode('utf-8'))
    return f"sha256:{hash_obj.hexdigest()}"


def verify_hash(data: Any, expected_hash: str) -> bool:
    """Verify that data matches expected hash (with 'sha256:' prefix)."""
    return calculate_sha256(data) == expected_hash


def create_audit_entry(event_id: str, inputs: Dict[str, Any], outputs: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create an audit trail entry with hash seal.

    Args:
        event_id: Unique identifier for this event (e.g. a report id)
        inputs: Input data for the calculation
        outputs: Output/results of the calculation

    Returns:
        Audit entry dict with event_id, timestamp, calculation_hash, inputs, outputs
    """
    timestamp = datetime.now(timezone.utc)

    hashable_data = {
        "event_id": event_id,
        "timestamp": timestamp,
        "inputs": inputs,
        "outputs": outputs
    }

    return {
        "event_id": event_id,
        "timestamp": timestamp.isoformat(),
        "calculation_hash": calculate_sha256(hashable_data),
        "inputs": inputs,
        "outputs": outputs
    }
