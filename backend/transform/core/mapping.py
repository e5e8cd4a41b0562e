"""Kingdom-aware field mapping (raw field-map -> canonical fields).

Each mapper is an ordered list of named steps over a working copy of the raw
fields. A step may:

- rewrite fields (normal mapping),
- record a fallback reason when it had to use a degraded rule; the record is
  still usable but counts as `fallback`,
- raise MappingError when the record cannot be mapped at all.

MAPPING_VERSION must be bumped whenever a step changes what it writes, so
canonical records produced by older rules are picked up again by
`only_unprocessed` runs.
"""

from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from ingestion.core.identity import normalize_value
from transform.core.errors import MappingError
from transform.core.normalization import (
    clean_str,
    country_name,
    county_name,
    flat_name,
    join_name_parts,
    split_list,
    state_name,
    to_int,
    to_number,
)


UTC = timezone.utc

MAPPING_VERSION = "2026.10.2"

FAUNA_KINGDOM = "Animalia"

NAME_PARTS = (
    "genus",
    "genericName",
    "subgenus",
    "infragenericEpithet",
    "specificEpithet",
    "infraspecificEpithet",
    "cultivarEpiteth",
)

SUPPORTED_RANKS = ("ESPECIE", "VARIEDADE", "FORMA", "SUB_ESPECIE")
_RANK_ALIASES = {
    "ESPECIE": "ESPECIE",
    "ESPÉCIE": "ESPECIE",
    "SPECIES": "ESPECIE",
    "VARIEDADE": "VARIEDADE",
    "VARIETY": "VARIEDADE",
    "VAR.": "VARIEDADE",
    "FORMA": "FORMA",
    "FORM": "FORMA",
    "F.": "FORMA",
    "SUB_ESPECIE": "SUB_ESPECIE",
    "SUBESPECIE": "SUB_ESPECIE",
    "SUBESPÉCIE": "SUB_ESPECIE",
    "SUBSPECIES": "SUB_ESPECIE",
    "SUBSP.": "SUB_ESPECIE",
}
_INFRASPECIFIC_MARKERS = {"var.", "subsp.", "ssp.", "f.", "forma"}

_FLOR = re.compile(r"(?:^|[\W_])fl[oô]r(?:[\W_]|$)", re.IGNORECASE)
_YEAR = re.compile(r"^\d{4}$")
_YEAR_MONTH = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(slots=True)
class MappingContext:
    record_type: str
    kingdom: str
    fallback_reasons: list[str] = field(default_factory=list)

    def fallback(self, reason: str) -> None:
        self.fallback_reasons.append(reason)


@dataclass(frozen=True, slots=True)
class MappingOutcome:
    fields: dict[str, Any]
    fallback_reasons: tuple[str, ...] = ()

    @property
    def fallback(self) -> bool:
        return bool(self.fallback_reasons)


Step = Callable[[dict[str, Any], MappingContext], None]


@dataclass(frozen=True, slots=True)
class Mapper:
    name: str
    steps: tuple[tuple[str, Step], ...]

    def apply(self, raw_fields: Any, *, record_type: str, kingdom: str) -> MappingOutcome:
        if not isinstance(raw_fields, Mapping):
            raise MappingError(f"raw payload is {type(raw_fields).__name__}, not a field-map", step="payload")
        doc = copy.deepcopy(dict(raw_fields))
        ctx = MappingContext(record_type=record_type, kingdom=kingdom)
        for step_name, step in self.steps:
            try:
                step(doc, ctx)
            except MappingError as ex:
                if ex.step is None:
                    raise MappingError(ex.reason, step=step_name) from ex
                raise
            except (TypeError, ValueError, AttributeError, KeyError, IndexError) as ex:
                raise MappingError(f"{type(ex).__name__}: {ex}", step=step_name) from ex
        return MappingOutcome(fields=doc, fallback_reasons=tuple(ctx.fallback_reasons))


# --------------------------------------------------------------------------- helpers


def _extension_rows(doc: Mapping[str, Any], name: str) -> Optional[list[dict[str, Any]]]:
    value = doc.get(name)
    if value is None:
        return None
    if not isinstance(value, list) or any(not isinstance(row, Mapping) for row in value):
        raise MappingError(f"extension {name!r} must be a list of field-maps")
    return [dict(row) for row in value]


def _json_object(value: Any) -> Optional[dict[str, Any]]:
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, str) and value.strip():
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def _canonical_from_scientific(name: str) -> Optional[str]:
    tokens = name.split()
    if len(tokens) < 2:
        return tokens[0] if tokens else None
    out = tokens[:2]
    if len(tokens) >= 4 and tokens[2].lower() in _INFRASPECIFIC_MARKERS:
        out += tokens[2:4]
    return " ".join(out)


def _drop_none(values: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


def parse_event_date(value: Any) -> Optional[datetime]:
    """ISO date, `YYYY` or `YYYY-MM` as an aware UTC datetime; None when unparseable."""
    text = clean_str(value)
    if not text:
        return None
    try:
        if _YEAR.match(text):
            return datetime(int(text), 1, 1, tzinfo=UTC)
        match = _YEAR_MONTH.match(text)
        if match:
            return datetime(int(match.group(1)), int(match.group(2)), 1, tzinfo=UTC)
        candidate = text[:-1] + "+00:00" if text.endswith("Z") else text
        parsed = datetime.fromisoformat(candidate)
        if parsed.tzinfo is None or parsed.utcoffset() is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    except (ValueError, OverflowError):
        # Year 0000, month 13, or an offset pushing the date out of range.
        return None


# --------------------------------------------------------------------------- shared steps


def _names(doc: dict[str, Any], ctx: MappingContext) -> None:
    canonical = join_name_parts(doc.get(part) for part in NAME_PARTS)
    scientific = clean_str(doc.get("scientificName"))
    if canonical is None and scientific is not None:
        canonical = _canonical_from_scientific(scientific)
        ctx.fallback("canonicalName derived from scientificName")
    if canonical is None and ctx.record_type == "taxon":
        raise MappingError("no usable name field (scientificName or name parts)")
    if canonical is not None:
        doc["canonicalName"] = canonical
    source = scientific or canonical
    if source:
        doc["flatScientificName"] = flat_name(source)


# --------------------------------------------------------------------------- taxon steps


def _taxon_rank(doc: dict[str, Any], ctx: MappingContext) -> None:
    rank = clean_str(doc.get("taxonRank"))
    if rank is None:
        ctx.fallback("taxonRank absent")
        return
    key = rank.upper().replace("-", "_").replace(" ", "_")
    normalized = _RANK_ALIASES.get(key)
    if normalized is None:
        raise MappingError(f"unsupported taxonRank {rank!r}; expected one of {', '.join(SUPPORTED_RANKS)}")
    doc["taxonRank"] = normalized


def _higher_classification(doc: dict[str, Any], ctx: MappingContext) -> None:
    value = doc.get("higherClassification")
    if not isinstance(value, str):
        return
    parts = [part.strip() for part in value.split(";")]
    chosen = parts[1] if len(parts) > 1 and parts[1] else parts[0]
    if chosen:
        doc["higherClassification"] = chosen


def _kingdom(doc: dict[str, Any], ctx: MappingContext) -> None:
    value = clean_str(doc.get("kingdom")) or ctx.kingdom
    doc["kingdom"] = FAUNA_KINGDOM if "animalia" in value.lower() else value


def _vernacular_names(doc: dict[str, Any], ctx: MappingContext) -> None:
    rows = _extension_rows(doc, "vernacularname")
    if rows is None:
        return
    names = []
    for row in rows:
        name = clean_str(row.get("vernacularName"))
        if name is None:
            continue
        language = clean_str(row.get("language"))
        names.append(
            {
                "vernacularName": re.sub(r"\s+", "-", name.lower()),
                "language": language[:1].upper() + language[1:].lower() if language else "Português",
            }
        )
    if names:
        doc["vernacularname"] = names
    else:
        doc.pop("vernacularname", None)


def _vegetation_type(first: Mapping[str, Any], doc: Mapping[str, Any]) -> Any:
    for profiles in (first.get("speciesprofile"), doc.get("speciesprofile")):
        if isinstance(profiles, list) and profiles and isinstance(profiles[0], Mapping):
            life_form = _json_object(profiles[0].get("lifeForm"))
            if life_form and life_form.get("vegetationType") is not None:
                return life_form["vegetationType"]
    return None


def _flora_distribution(doc: dict[str, Any], ctx: MappingContext) -> None:
    rows = _extension_rows(doc, "distribution")
    if not rows:
        doc.pop("distribution", None)
        return
    first = rows[0]
    remarks = _json_object(first.get("occurrenceRemarks"))
    if remarks is None:
        ctx.fallback("flora distribution without occurrenceRemarks")
        remarks = {}
    locations = sorted(v.strip() for v in (row.get("locationID") for row in rows) if isinstance(v, str) and v.strip())
    doc["distribution"] = _drop_none(
        {
            "origin": clean_str(first.get("establishmentMeans")),
            "Endemism": remarks.get("endemism"),
            "phytogeographicDomains": remarks.get("phytogeographicDomain"),
            "occurrence": locations,
            "vegetationType": _vegetation_type(first, doc),
        }
    )


def _fauna_distribution(doc: dict[str, Any], ctx: MappingContext) -> None:
    rows = _extension_rows(doc, "distribution")
    if not rows:
        doc.pop("distribution", None)
        return
    first = rows[0]
    if clean_str(first.get("locality")) is None:
        ctx.fallback("fauna distribution without locality")
    doc["distribution"] = _drop_none(
        {
            "origin": clean_str(first.get("establishmentMeans")),
            "occurrence": split_list(first.get("locality")),
            "countryCode": split_list(first.get("countryCode")),
        }
    )


def _species_profile(doc: dict[str, Any], ctx: MappingContext) -> None:
    rows = _extension_rows(doc, "speciesprofile")
    if not rows:
        doc.pop("speciesprofile", None)
        return
    profile = copy.deepcopy(rows[0])
    life_form = _json_object(profile.get("lifeForm"))
    if life_form is not None:
        life_form.pop("vegetationType", None)
        profile["lifeForm"] = life_form
    doc["speciesprofile"] = profile


def _other_names(doc: dict[str, Any], ctx: MappingContext) -> None:
    rows = _extension_rows(doc, "resourcerelationship")
    doc.pop("resourcerelationship", None)
    if not rows:
        return
    names = []
    for row in rows:
        taxon_id = clean_str(row.get("relatedResourceID"))
        if taxon_id is None:
            continue
        names.append(
            {
                "taxonID": taxon_id,
                "scientificName": None,
                "taxonomicStatus": clean_str(row.get("relationshipOfResource")),
            }
        )
    if names:
        doc["othernames"] = names


# --------------------------------------------------------------------------- occurrence steps


def _occurrence_id(doc: dict[str, Any], ctx: MappingContext) -> None:
    value = clean_str(doc.get("occurrenceID"))
    if value is not None:
        doc["occurrenceID"] = value


def _geo_point(doc: dict[str, Any], ctx: MappingContext) -> None:
    doc.pop("geoPoint", None)
    raw_lat, raw_lon = doc.get("decimalLatitude"), doc.get("decimalLongitude")
    if raw_lat in (None, "") and raw_lon in (None, ""):
        return
    lat, lon = to_number(raw_lat), to_number(raw_lon)
    if lat is None or lon is None or not -90 <= lat <= 90 or not -180 <= lon <= 180:
        ctx.fallback("invalid coordinates")
        return
    doc["geoPoint"] = {"type": "Point", "coordinates": [lon, lat]}


def _ipt_kingdoms(doc: dict[str, Any], ctx: MappingContext) -> None:
    value = doc.get("iptKingdom", doc.get("kingdom"))
    if isinstance(value, list):
        kingdoms = [k.strip() for k in value if isinstance(k, str) and k.strip()]
    else:
        kingdoms = split_list(value, ",;")
    doc["iptKingdoms"] = kingdoms or [ctx.kingdom]


def _event_date(doc: dict[str, Any], ctx: MappingContext) -> None:
    year = to_int(doc.get("year"), low=1)
    month = to_int(doc.get("month"), low=1, high=12)
    day = to_int(doc.get("day"), low=1, high=31)
    for key, value in (("year", year), ("month", month), ("day", day)):
        if value is not None:
            doc[key] = value

    raw = doc.get("eventDate")
    if clean_str(raw) is None:
        return
    parsed = parse_event_date(raw)
    if parsed is None:
        ctx.fallback("eventDate unparseable; rebuilt from year/month/day")
        doc["verbatimEventDate"] = raw
        if year is None:
            doc.pop("eventDate", None)
            return
        try:
            parsed = datetime(year, month or 1, day or 1, tzinfo=UTC)
        except ValueError:
            doc.pop("eventDate", None)
            return
    doc["eventDate"] = normalize_value(parsed)
    if not isinstance(doc.get("year"), int):
        doc["year"] = parsed.year
    if not isinstance(doc.get("month"), int):
        doc["month"] = parsed.month
    if not isinstance(doc.get("day"), int):
        doc["day"] = parsed.day


def _locality(doc: dict[str, Any], ctx: MappingContext) -> None:
    for key, normalize in (("country", country_name), ("stateProvince", state_name), ("county", county_name)):
        value = normalize(doc.get(key))
        if value is not None:
            doc[key] = value


def _reproductive_condition(doc: dict[str, Any], ctx: MappingContext) -> None:
    kingdoms = [k.lower() for k in doc.get("iptKingdoms") or []]
    remarks = doc.get("occurrenceRemarks")
    if "plantae" in kingdoms and isinstance(remarks, str) and _FLOR.search(remarks):
        doc["reproductiveCondition"] = "flor"


# --------------------------------------------------------------------------- registry


def _taxon_mapper(name: str, distribution: Step) -> Mapper:
    return Mapper(
        name=name,
        steps=(
            ("taxon_rank", _taxon_rank),
            ("names", _names),
            ("higher_classification", _higher_classification),
            ("kingdom", _kingdom),
            ("vernacular_names", _vernacular_names),
            ("distribution", distribution),
            ("species_profile", _species_profile),
            ("other_names", _other_names),
        ),
    )


FLORA_TAXON_MAPPER = _taxon_mapper("taxon/flora", _flora_distribution)
FAUNA_TAXON_MAPPER = _taxon_mapper("taxon/fauna", _fauna_distribution)
OCCURRENCE_MAPPER = Mapper(
    name="occurrence",
    steps=(
        ("occurrence_id", _occurrence_id),
        ("geo_point", _geo_point),
        ("names", _names),
        ("ipt_kingdoms", _ipt_kingdoms),
        ("event_date", _event_date),
        ("locality", _locality),
        ("reproductive_condition", _reproductive_condition),
    ),
)


def mapper_for(record_type: str, kingdom: str) -> Mapper:
    if record_type == "occurrence":
        return OCCURRENCE_MAPPER
    if record_type == "taxon":
        return FAUNA_TAXON_MAPPER if "animalia" in (kingdom or "").lower() else FLORA_TAXON_MAPPER
    raise MappingError(f"unknown record type {record_type!r}", step="dispatch")


def map_record(record_type: str, kingdom: str, raw_fields: Any) -> MappingOutcome:
    return mapper_for(record_type, kingdom).apply(raw_fields, record_type=record_type, kingdom=kingdom)

