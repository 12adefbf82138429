#Purpose: Firestore REST typed-value codec.
#Firestore's REST API wraps every value in a type tag:
#  {"stringValue": "x"}, {"integerValue": "3"}, {"doubleValue": 1.5}, {"booleanValue": true},
#  {"nullValue": null}, {"timestampValue": "2024-01-01T10:00:00Z"},
#  {"arrayValue": {"values": [...]}}, {"mapValue": {"fields": {...}}}
#This module converts between those and plain Python values. No HTTP here.

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(text: str) -> datetime:
    """
    Firestore returns RFC 3339 with up to nanosecond precision ("...123456789Z");
    Python keeps microseconds, so the fraction is cut to 6 digits.
    """
    text = text.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    if "." in text:
        head, rest = text.split(".", 1)
        offset_index = max(rest.find("+"), rest.find("-"))
        if offset_index == -1:
            fraction, offset = rest, ""
        else:
            fraction, offset = rest[:offset_index], rest[offset_index:]
        text = f"{head}.{fraction[:6].ljust(6, '0')}{offset}"

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def encode_value(value: Any) -> Dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, Enum):
        value = value.value
    # bool first: bool is a subclass of int
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": format_timestamp(value)}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(item) for item in value]}}
    raise TypeError(f"Cannot encode {type(value).__name__} as a Firestore value")


def decode_value(value: Dict[str, Any]) -> Any:
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "timestampValue" in value:
        return parse_timestamp(value["timestampValue"])
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    if "arrayValue" in value:
        return [decode_value(item) for item in value["arrayValue"].get("values", [])]
    raise ValueError(f"Unsupported Firestore value: {sorted(value)}")


def encode_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: encode_value(item) for key, item in data.items()}


def decode_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: decode_value(item) for key, item in fields.items()}
