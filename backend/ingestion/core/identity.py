"""Deterministic identity for taxa and occurrences.

Ids are a pure function of the normalized natural key plus a source scope:

- taxa:        <prefix><taxonID>, prefix "A" for fauna, "P" for flora/fungi;
               no source tag returns the bare taxonID (pre-existing records).
- occurrences: <occurrenceID>::<resource_id>, else
               hash::<resource_id>::<sha1 over the fallback fields>.

Same normalized input, same id: across calls and across processes.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from typing import Any, Final, Mapping, Optional

from ingestion.core.dedup import FALLBACK_FIELDS, compute_fallback_hash_hex, format_fallback_id
from ingestion.core.errors import IdentityError


UTC = timezone.utc

MISSING_PRIMARY_KEY: Final[str] = "MissingPrimaryKey"
INSUFFICIENT_FALLBACK_FIELDS: Final[str] = "InsufficientFallbackFields"
MISSING_RESOURCE_ID: Final[str] = "MissingResourceId"
UNKNOWN_SOURCE_TAG: Final[str] = "UnknownSourceTag"

FAUNA_PREFIX: Final[str] = "A"
FLORA_PREFIX: Final[str] = "P"

_SOURCE_PREFIXES: Final[dict[str, str]] = {
    "fauna": FAUNA_PREFIX,
    "animalia": FAUNA_PREFIX,
    "flora": FLORA_PREFIX,
    "plantae": FLORA_PREFIX,
    "fungi": FLORA_PREFIX,
}

_WHITESPACE = re.compile(r"\s+")


def _iso_utc(value: datetime) -> str:
    # Millisecond precision with a Z suffix, e.g. 2021-03-04T00:00:00.000Z.
    if value.tzinfo is None or value.utcoffset() is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def normalize_value(value: Any) -> Optional[str]:
    """Trim, collapse whitespace runs, render dates as ISO-8601 UTC; empty -> None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return _iso_utc(value)
    if isinstance(value, date):
        return _iso_utc(datetime.combine(value, time.min, tzinfo=UTC))
    text = _WHITESPACE.sub(" ", str(value)).strip()
    return text or None


def normalize_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize scalar values of a raw field-map; nested extension rows pass through."""
    normalized: dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, (list, dict)):
            normalized[str(key)] = value
        else:
            normalized[str(key)] = normalize_value(value)
    return normalized


def source_prefix(source_tag: Optional[str]) -> str:
    if source_tag is None:
        return ""
    tag = normalize_value(source_tag)
    if tag is None:
        return ""
    prefix = _SOURCE_PREFIXES.get(tag.lower())
    if prefix is None:
        raise IdentityError(UNKNOWN_SOURCE_TAG, f"no id prefix for source tag {source_tag!r}")
    return prefix


def assign_taxon_id(natural_key: Any, source_tag: Optional[str] = None) -> str:
    key = normalize_value(natural_key)
    if key is None:
        raise IdentityError(MISSING_PRIMARY_KEY, "taxonID is absent or empty")
    return source_prefix(source_tag) + key


def assign_occurrence_id(natural_key_fields: Mapping[str, Any], resource_id: Any) -> str:
    resource = normalize_value(resource_id)
    if resource is None:
        raise IdentityError(MISSING_RESOURCE_ID, "resource id is required for occurrence ids")

    occurrence_id = normalize_value(natural_key_fields.get("occurrenceID"))
    if occurrence_id is not None:
        return f"{occurrence_id}::{resource}"

    values = [v for v in (normalize_value(natural_key_fields.get(name)) for name in FALLBACK_FIELDS) if v is not None]
    if not values:
        raise IdentityError(
            INSUFFICIENT_FALLBACK_FIELDS,
            "occurrenceID absent and every fallback field is empty",
        )
    return format_fallback_id(resource_id=resource, digest_hex=compute_fallback_hash_hex(resource_id=resource, values=values))


def assign_record_id(record_type: str, fields: Mapping[str, Any], *, resource_id: str, kingdom: Optional[str]) -> str:
    """Dispatch on record type (taxon ids are scoped by kingdom, occurrences by resource)."""
    if record_type == "taxon":
        return assign_taxon_id(fields.get("taxonID"), kingdom)
    return assign_occurrence_id(fields, resource_id)
