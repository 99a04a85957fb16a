"""
Content fingerprints for change detection.

A fingerprint is a hash over a record's business fields. Two rows with the
same business content have the same fingerprint no matter when they were
touched, which is how timestamp-only updates are told apart from real
changes.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from typing import Any

from diffmigrate.serialization import canonical_json

SYSTEM_FIELDS: frozenset[str] = frozenset({"id", "created_at", "updated_at", "deleted_at"})
"""Fields never included in a fingerprint."""

_FINGERPRINT_LENGTH = 16


def fingerprint_fields(
    row: Mapping[str, Any],
    exclude_fields: Iterable[str] = (),
    timestamp_field: str | None = None,
) -> dict[str, Any]:
    """The subset of ``row`` that a fingerprint covers."""
    excluded = SYSTEM_FIELDS | set(exclude_fields)
    if timestamp_field:
        excluded = excluded | {timestamp_field}
    return {key: value for key, value in row.items() if key not in excluded}


def compute_fingerprint(
    row: Mapping[str, Any],
    algorithm: str = "sha256",
    exclude_fields: Iterable[str] = (),
    timestamp_field: str | None = None,
) -> str:
    """
    Deterministic fingerprint of a row's business content.

    Excluded and system fields are dropped, datetimes become ISO strings,
    Decimals become exact strings, and the rest is serialized as sorted-key
    compact JSON before hashing.

    Args:
        row: Record to fingerprint.
        algorithm: md5, sha1 or sha256.
        exclude_fields: Additional fields to leave out.
        timestamp_field: Last-modified field, always left out.

    Returns:
        ``"<algorithm>_<first 16 hex digits>"``.

    Example:
        >>> compute_fingerprint({"id": 1, "name": "Main St"}, "md5")
        'md5_...'
    """
    payload = canonical_json(fingerprint_fields(row, exclude_fields, timestamp_field))
    digest = hashlib.new(algorithm, payload.encode("utf-8")).hexdigest()
    return f"{algorithm}_{digest[:_FINGERPRINT_LENGTH]}"


__all__ = [
    "SYSTEM_FIELDS",
    "fingerprint_fields",
    "compute_fingerprint",
]
