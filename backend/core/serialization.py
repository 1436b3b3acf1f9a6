"""
Serialization helpers shared by the API layer and the ledger.

- serialize_doc: MongoDB document -> JSON-safe dict for responses
- to_canonical: recursively normalise values so a payload hashes the same
  before and after a MongoDB round trip
- canonical_json / sha256_hex: deterministic fingerprints
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
import hashlib
import json

from bson import ObjectId, Decimal128
from bson.errors import InvalidId


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Serialize MongoDB document for JSON response (handles Decimal128, ObjectId, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        if key == "_id":
            key = "id"
        result[key] = _serialize_value(value)
    return result


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return float(value.to_decimal())
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(item) for item in value]
    return value


def to_canonical(obj: Any) -> Any:
    """
    Recursively convert an object to plain JSON types.
    ObjectId -> str, datetime -> ISO string (millisecond precision, as BSON stores it),
    Decimal/Decimal128 -> float.
    """
    if obj is None:
        return None
    if isinstance(obj, ObjectId):
        return str(obj)
    if isinstance(obj, Decimal128):
        return float(obj.to_decimal())
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, datetime):
        return obj.replace(microsecond=(obj.microsecond // 1000) * 1000, tzinfo=None).isoformat()
    if isinstance(obj, dict):
        return {str(k): to_canonical(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_canonical(item) for item in obj]
    if isinstance(obj, bytes):
        return obj.hex()
    return obj


def canonical_json(data: Any) -> str:
    """Compact JSON with sorted keys."""
    return json.dumps(to_canonical(data), sort_keys=True, separators=(",", ":"))


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def parse_object_id(value: Any) -> Optional[ObjectId]:
    """Return an ObjectId, or None when the value is not a valid id."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None
