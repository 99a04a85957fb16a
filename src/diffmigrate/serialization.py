"""
JSON serialization utilities for migration records.

Handles the values legacy rows and orchestration records carry that the
standard JSON encoder rejects: datetimes, dates, Decimals and UUIDs.

Example:
    >>> from diffmigrate.serialization import json_dumps, canonical_json
    >>> json_dumps({"at": datetime(2024, 1, 1, tzinfo=UTC)})
    '{"at": "2024-01-01T00:00:00+00:00"}'
    >>> canonical_json({"b": 1, "a": Decimal("1.50")})
    '{"a":"1.50","b":1}'
"""

from __future__ import annotations

import json
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID


class DiffMigrateJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for row values.

    - datetime and date: ISO 8601 string
    - Decimal: exact string representation
    - UUID: hyphenated string
    - bytes: hex string
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, (bytes, bytearray, memoryview)):
            return bytes(obj).hex()
        return super().default(obj)


def json_dumps(obj: Any) -> str:
    """Serialize to JSON using DiffMigrateJSONEncoder."""
    return json.dumps(obj, cls=DiffMigrateJSONEncoder)


def json_loads(value: str | bytes | dict[str, Any] | list[Any] | None) -> Any:
    """
    Deserialize a JSON column value.

    Drivers that decode JSON columns themselves hand back dicts or lists,
    which are returned unchanged.
    """
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def canonical_json(obj: Any) -> str:
    """Sorted-key compact JSON, stable across runs and processes."""
    return json.dumps(
        obj,
        cls=DiffMigrateJSONEncoder,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def parse_datetime(value: Any) -> datetime | None:
    """
    Coerce a stored timestamp into an aware datetime.

    Accepts datetimes, dates and ISO 8601 strings (including the
    ``YYYY-MM-DD HH:MM:SS`` form SQLite returns). Naive values are UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def to_utc(value: datetime) -> datetime:
    """Normalize an aware or naive (assumed UTC) datetime to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


__all__ = [
    "DiffMigrateJSONEncoder",
    "json_dumps",
    "json_loads",
    "canonical_json",
    "parse_datetime",
    "to_utc",
]
