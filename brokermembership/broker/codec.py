"""
Broker record codec.

Registry payloads are compact UTF-8 JSON objects:

    {"host":"10.0.0.1","id":1,"port":9093}

Keys are sorted so the encoding of a record is stable. Unknown keys are
ignored on decode so newer writers can add metadata without breaking older
readers.
"""

import json
from typing import Any, Dict

from brokermembership.broker.record import BrokerRecord
from brokermembership.errors import MalformedRecord


def record_to_dict(record: BrokerRecord) -> Dict[str, Any]:
    """Convert a record to its wire dictionary."""
    return {
        "id": record.broker_id,
        "host": record.host,
        "port": record.port,
    }


def record_from_dict(data: Any) -> BrokerRecord:
    """
    Build a record from a wire dictionary.

    Args:
        data: Decoded JSON value

    Returns:
        Broker record

    Raises:
        MalformedRecord: If required fields are missing or invalid
    """
    if not isinstance(data, dict):
        raise MalformedRecord(f"Expected JSON object, got {type(data).__name__}")

    missing = [key for key in ("id", "host", "port") if key not in data]
    if missing:
        raise MalformedRecord(f"Missing fields: {', '.join(missing)}")

    try:
        return BrokerRecord(
            broker_id=data["id"],
            host=data["host"],
            port=data["port"],
        )
    except (TypeError, ValueError) as e:
        raise MalformedRecord(str(e)) from e


def encode(record: BrokerRecord) -> bytes:
    """
    Encode a broker record for storage at its registry entry.

    Args:
        record: Broker record

    Returns:
        UTF-8 JSON payload
    """
    return json.dumps(
        record_to_dict(record),
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")


def decode(payload: bytes) -> BrokerRecord:
    """
    Decode a registry entry payload.

    Args:
        payload: Raw bytes read from the coordination service

    Returns:
        Broker record

    Raises:
        MalformedRecord: If the payload is not a valid broker record
    """
    if payload is None:
        raise MalformedRecord("Empty payload")

    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedRecord(f"Payload is not valid JSON: {e}") from e

    return record_from_dict(data)
