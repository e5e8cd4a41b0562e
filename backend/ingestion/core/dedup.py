from __future__ import annotations

"""Content hash for occurrences without a natural identifier.

Hash rule:
- sha1("<resource_id>|<f1>|<f2>|...") over the non-empty fallback fields, in
  FALLBACK_FIELDS order.

Changing the algorithm or the order changes every hashed id and re-inserts
all previously staged records.
"""

import hashlib
from typing import Final, Sequence


FALLBACK_FIELDS: Final[tuple[str, ...]] = (
    "catalogNumber",
    "recordNumber",
    "eventDate",
    "locality",
    "recordedBy",
)


def compute_fallback_hash_hex(*, resource_id: str, values: Sequence[str]) -> str:
    payload = "|".join([resource_id, *values])
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def format_fallback_id(*, resource_id: str, digest_hex: str) -> str:
    return f"hash::{resource_id}::{digest_hex}"
