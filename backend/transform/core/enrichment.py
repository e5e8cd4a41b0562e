"""Reference enrichment for canonical records.

Three reference lists live in the `reference_records` collection:

- threat:            red-list entries; each match adds {source, category}
                     to `threatStatus`,
- invasive:          invasive species list; the first match becomes
                     `invasiveStatus` with `isInvasive: true`,
- conservation_unit: conservation unit catalogue; matches add {ucName} to
                     `conservationUnits`.

A record matches an entry by id (record id, taxonID, occurrenceID) or by
name key (canonical/scientific name with everything but letters and digits
removed, lowercased). Entries are collected once per transform run into an
in-memory index; records with no match get no enrichment keys at all.

Loading a list replaces every row previously loaded for the same
(kind, source).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Iterable, Mapping, Optional, TypeVar

from app.core.errors import ConfigurationError
from app.core.store import Collection, DocumentStore
from transform.core.normalization import clean_str, flat_name


UTC = timezone.utc
logger = logging.getLogger(__name__)

T = TypeVar("T")

ID_FIELDS = ("taxonID", "taxonId", "taxon_id", "identifier", "id")
NAME_FIELDS = (
    "canonicalName",
    "scientificName",
    "scientificname",
    "nome",
    "nomeCientifico",
    "nome_cientifico",
    "species",
    "especie",
    "speciesScientificName",
)
_CATEGORY_FIELDS = (
    "category",
    "categoria",
    "categoryNational",
    "categoria_nacional",
    "Categoria de Risco",
    "threatStatus",
    "status",
)
_NOTE_FIELDS = ("notes", "observacao")
_UNIT_NAME_FIELDS = ("ucName", "Nome da UC", "nomeUC", "nome_uc", "nome", "name")


class ReferenceKind(str, Enum):
    THREAT = "threat"
    INVASIVE = "invasive"
    CONSERVATION_UNIT = "conservation_unit"


@dataclass(frozen=True, slots=True)
class ThreatStatus:
    source: str
    category: Optional[str] = None

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {"source": self.source}
        if self.category is not None:
            doc["category"] = self.category
        return doc


@dataclass(frozen=True, slots=True)
class InvasiveStatus:
    source: str
    notes: Optional[str] = None

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {"source": self.source, "isInvasive": True}
        if self.notes is not None:
            doc["notes"] = self.notes
        return doc


@dataclass(frozen=True, slots=True)
class ConservationUnit:
    name: str

    def to_document(self) -> dict[str, Any]:
        return {"ucName": self.name}


def name_key(value: Any) -> Optional[str]:
    text = clean_str(value)
    if text is None:
        return None
    return flat_name(text) or None


def _first_str(doc: Mapping[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        text = clean_str(doc.get(key))
        if text is not None:
            return text
    return None


def collect_ids(doc: Mapping[str, Any]) -> list[str]:
    ids: list[str] = []
    for key in ID_FIELDS:
        text = clean_str(doc.get(key))
        if text is not None and text not in ids:
            ids.append(text)
    return ids


def collect_names(doc: Mapping[str, Any]) -> list[str]:
    names: list[str] = []
    for key in NAME_FIELDS:
        key_value = name_key(doc.get(key))
        if key_value is not None and key_value not in names:
            names.append(key_value)
    flat = clean_str(doc.get("flatScientificName"))
    if flat is not None and flat.lower() not in names:
        names.append(flat.lower())
    return names


@dataclass
class IndexedLookup(Generic[T]):
    by_id: dict[str, list[T]] = field(default_factory=dict)
    by_name: dict[str, list[T]] = field(default_factory=dict)

    def add(self, ids: Iterable[str], names: Iterable[str], value: T) -> None:
        for key in ids:
            self.by_id.setdefault(key, []).append(value)
        for key in names:
            self.by_name.setdefault(key, []).append(value)

    def matches(self, ids: Iterable[str], names: Iterable[str]) -> list[T]:
        """Id matches first, then name matches; each entry once."""
        found: list[T] = []
        for table, keys in ((self.by_id, ids), (self.by_name, names)):
            for key in keys:
                for entry in table.get(key, ()):
                    if entry not in found:
                        found.append(entry)
        return found

    def __bool__(self) -> bool:
        return bool(self.by_id or self.by_name)


class ReferenceIndex:
    def __init__(self) -> None:
        self.threats: IndexedLookup[ThreatStatus] = IndexedLookup()
        self.invasives: IndexedLookup[InvasiveStatus] = IndexedLookup()
        self.units: IndexedLookup[ConservationUnit] = IndexedLookup()

    @classmethod
    def load(cls, store: DocumentStore, *, batch_size: int = 1000) -> "ReferenceIndex":
        """Index every reference row in the store (StorageError propagates)."""
        index = cls()
        after_id: Optional[str] = None
        loaded = 0
        while True:
            rows = store.find(Collection.REFERENCE, limit=batch_size, after_id=after_id)
            if not rows:
                break
            after_id = rows[-1]["id"]
            for row in rows:
                if index.add(ReferenceKind(row["kind"]), row["source"], row["fields"]):
                    loaded += 1
        logger.info("reference index loaded: %d entries", loaded)
        return index

    def add(self, kind: ReferenceKind, source: str, doc: Mapping[str, Any]) -> bool:
        """Index one reference entry; False when it has nothing to match on."""
        ids = collect_ids(doc)
        names = collect_names(doc)
        if not ids and not names:
            return False

        if kind is ReferenceKind.THREAT:
            self.threats.add(ids, names, ThreatStatus(source, _first_str(doc, _CATEGORY_FIELDS)))
        elif kind is ReferenceKind.INVASIVE:
            self.invasives.add(ids, names, InvasiveStatus(source, _first_str(doc, _NOTE_FIELDS)))
        else:
            unit = _first_str(doc, _UNIT_NAME_FIELDS)
            if unit is None:
                return False
            self.units.add(ids, names, ConservationUnit(unit))
        return True

    def __bool__(self) -> bool:
        return bool(self.threats or self.invasives or self.units)

    def enrich(self, record_id: str, record_type: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        if not self:
            return {}
        ids = [record_id]
        id_keys = ("taxonID", "acceptedNameUsageID", "occurrenceID") if record_type == "occurrence" else ("taxonID",)
        for key in id_keys:
            text = clean_str(fields.get(key))
            if text is not None and text not in ids:
                ids.append(text)
        names = [n for n in (name_key(fields.get("canonicalName")), name_key(fields.get("scientificName"))) if n]
        flat = clean_str(fields.get("flatScientificName"))
        if flat is not None:
            names.append(flat.lower())

        extra: dict[str, Any] = {}
        threats = self.threats.matches(ids, names)
        if threats:
            extra["threatStatus"] = [t.to_document() for t in threats]
        invasives = self.invasives.matches(ids, names)
        if invasives:
            extra["invasiveStatus"] = invasives[0].to_document()
        units = self.units.matches(ids, names)
        if units:
            extra["conservationUnits"] = [u.to_document() for u in units]
        return extra


def load_reference_documents(
    store: DocumentStore,
    kind: ReferenceKind,
    source: str,
    documents: Iterable[Any],
    *,
    dry_run: bool = False,
) -> int:
    """Replace the reference rows of (kind, source) with `documents`.

    Entries that are not field-maps are skipped with a warning. Returns the
    number of rows written (or that would be written on a dry run).
    """
    source = source.strip()
    if not source:
        raise ConfigurationError("Reference source must be a non-empty name.")

    rows: list[dict[str, Any]] = []
    for position, doc in enumerate(documents):
        if not isinstance(doc, Mapping):
            logger.warning("reference %s/%s entry #%d is not a field-map; skipped", kind.value, source, position)
            continue
        rows.append(dict(doc))

    if dry_run:
        return len(rows)

    stale = store.find_ids(Collection.REFERENCE, {"kind": kind.value, "source": source})
    store.delete_many(Collection.REFERENCE, stale)
    loaded_at = datetime.now(tz=UTC)
    for position, doc in enumerate(rows):
        store.upsert(
            Collection.REFERENCE,
            f"{kind.value}:{source}:{position:06d}",
            {"kind": kind.value, "source": source, "fields": doc, "loaded_at": loaded_at},
        )
    logger.info("reference %s/%s: %d rows loaded, %d replaced", kind.value, source, len(rows), len(stale))
    return len(rows)
