from __future__ import annotations

import asyncio

import pytest

from app.core.errors import ConfigurationError, StorageError
from app.core.store import Collection, DocumentStore
from conftest import FLORA_TAXA, OCC_RES
from ingestion.core.errors import VersionCheckError
from ingestion.core.raw_ingest import IngestOptions, IngestStatus, RawIngestionEngine
from ingestion.core.version_check import VersionGatekeeper


def _engine(store, gatekeeper, reader) -> RawIngestionEngine:
    return RawIngestionEngine(store, gatekeeper, reader, runner_id="test-runner", script_version="abc123")


def _ingest(engine: RawIngestionEngine, resource_id: str, **options):
    return asyncio.run(engine.ingest(resource_id, IngestOptions(**options)))


def _occurrences(*ids: str) -> list[dict]:
    return [{"occurrenceID": i, "catalogNumber": f"RB{i}", "locality": "Serra do Mar"} for i in ids]


def _fail_after(monkeypatch, store: DocumentStore, method: str, collection: Collection, allowed: int = 0) -> None:
    """Make `store.<method>` on `collection` raise a systemic StorageError after `allowed` calls."""
    real = getattr(store, method)
    calls = {"n": 0}

    def wrapper(target, *args, **kwargs):
        if target is collection:
            calls["n"] += 1
            if calls["n"] > allowed:
                raise StorageError(f"{method} on {target.value} failed: OperationalError", systemic=True)
        return real(target, *args, **kwargs)

    monkeypatch.setattr(store, method, wrapper)


def test_first_ingest_inserts_everything(store, gatekeeper, reader):
    reader.records[(OCC_RES, "Plantae")] = _occurrences("o1", "o2", "o3")

    result = _ingest(_engine(store, gatekeeper, reader), OCC_RES)

    assert result.status is IngestStatus.SUCCESS
    assert result.ipt_version == "1.0"
    assert result.document_count == 3
    assert result.processing_stats.to_dict() == {
        "total_from_ipt": 3,
        "inserted": 3,
        "updated": 0,
        "unchanged": 0,
        "removed": 0,
        "failed": 0,
    }
    assert store.find_ids(Collection.RAW) == ["o1::occ_res", "o2::occ_res", "o3::occ_res"]

    staged = store.get(Collection.RAW, "o1::occ_res")
    assert staged["resource_id"] == OCC_RES
    assert staged["kingdom"] == "Plantae"
    assert staged["record_type"] == "occurrence"
    assert staged["ipt_version"] == "1.0"
    assert staged["source_url"] == "https://ipt.example.org/ipt/archive.do?r=occ_res"
    assert staged["raw_fields"]["catalogNumber"] == "RBo1"

    state = store.get(Collection.RESOURCE_STATES, OCC_RES)
    assert state["last_known_version"] == "1.0"

    outcome = store.get(Collection.RUN_OUTCOMES, result.run_id)
    assert outcome["process_type"] == "ingest_occurrences"
    assert outcome["status"] == "success"
    assert outcome["counts"]["inserted"] == 3
    assert outcome["runner_id"] == "test-runner"
    assert outcome["version"] == "abc123"


def test_reingest_classifies_updates_and_removals(store, gatekeeper, reader, metadata):
    engine = _engine(store, gatekeeper, reader)
    reader.records[(OCC_RES, "Plantae")] = _occurrences("o1", "o2", "o3")
    _ingest(engine, OCC_RES)

    metadata.versions[OCC_RES] = "1.1"
    changed = _occurrences("o1", "o2")
    changed[1]["locality"] = "Serra da Mantiqueira"
    reader.records[(OCC_RES, "Plantae")] = changed

    result = _ingest(engine, OCC_RES)

    stats = result.processing_stats
    assert (stats.total_from_ipt, stats.inserted, stats.updated, stats.unchanged, stats.removed) == (2, 0, 1, 1, 1)
    assert store.find_ids(Collection.RAW) == ["o1::occ_res", "o2::occ_res"]
    assert store.get(Collection.RAW, "o2::occ_res")["raw_fields"]["locality"] == "Serra da Mantiqueira"
    assert store.get(Collection.RESOURCE_STATES, OCC_RES)["last_known_version"] == "1.1"


def test_unchanged_version_is_skipped(store, gatekeeper, reader):
    engine = _engine(store, gatekeeper, reader)
    reader.records[(OCC_RES, "Plantae")] = _occurrences("o1")
    _ingest(engine, OCC_RES)
    reader.reads.clear()

    result = _ingest(engine, OCC_RES)

    assert result.status is IngestStatus.SKIPPED
    assert result.document_count == 0
    assert result.processing_stats.to_dict() == {
        "total_from_ipt": 0,
        "inserted": 0,
        "updated": 0,
        "unchanged": 0,
        "removed": 0,
        "failed": 0,
    }
    assert reader.reads == []
    assert store.get(Collection.RUN_OUTCOMES, result.run_id)["status"] == "skipped"


def test_force_rewrites_every_record(store, gatekeeper, reader):
    engine = _engine(store, gatekeeper, reader)
    reader.records[(OCC_RES, "Plantae")] = _occurrences("o1", "o2", "o3")
    _ingest(engine, OCC_RES)

    result = _ingest(engine, OCC_RES, force=True)

    assert result.status is IngestStatus.SUCCESS
    stats = result.processing_stats
    assert stats.updated == stats.total_from_ipt == 3
    assert stats.inserted == stats.removed == 0
    assert store.count(Collection.RAW) == 3


def test_dry_run_counts_without_writing(store, gatekeeper, reader):
    reader.records[(OCC_RES, "Plantae")] = _occurrences("o1", "o2", "o3")

    result = _ingest(_engine(store, gatekeeper, reader), OCC_RES, dry_run=True)

    assert result.status is IngestStatus.SUCCESS
    assert result.processing_stats.inserted == 3
    assert result.run_id is None
    assert store.count(Collection.RAW) == 0
    assert store.count(Collection.RUN_OUTCOMES) == 0
    assert store.count(Collection.RESOURCE_STATES) == 0


def test_fetch_failure_keeps_partial_staging(store, gatekeeper, reader):
    reader.records[(OCC_RES, "Plantae")] = _occurrences("o1", "o2", "o3")
    reader.fail_after[(OCC_RES, "Plantae")] = 1

    result = _ingest(_engine(store, gatekeeper, reader), OCC_RES)

    assert result.status is IngestStatus.FAILURE
    assert result.error.startswith("FetchError")
    assert store.find_ids(Collection.RAW) == ["o1::occ_res"]
    # A failed run never advances the version.
    assert store.get(Collection.RESOURCE_STATES, OCC_RES)["last_known_version"] is None
    assert store.get(Collection.RUN_OUTCOMES, result.run_id)["status"] == "failure"


def test_record_failures_do_not_abort_the_run(store, gatekeeper, reader):
    reader.records[(OCC_RES, "Plantae")] = [
        "not a field-map",
        {"occurrenceID": "  ", "remarks": "no key fields"},
        {"occurrenceID": "o1"},
        {"catalogNumber": "C9"},
    ]

    result = _ingest(_engine(store, gatekeeper, reader), OCC_RES)

    assert result.status is IngestStatus.SUCCESS
    assert result.processing_stats.failed == 2
    assert result.processing_stats.inserted == 2
    assert [e.code for e in result.errors] == ["MalformedRecord", "InsufficientFallbackFields"]
    assert result.errors[0].record_ref == "occ_res:Plantae:#0"
    assert store.find_ids(Collection.RAW) == [
        "hash::occ_res::081750a7a1c3f5fc60d06e6332488100089dc980",
        "o1::occ_res",
    ]

    outcome = store.get(Collection.RUN_OUTCOMES, result.run_id)
    assert outcome["error_summary"] == {"MalformedRecord": 1, "InsufficientFallbackFields": 1}
    assert len(outcome["errors"]) == 2


def test_duplicate_id_in_one_pass_counts_as_update(store, gatekeeper, reader):
    reader.records[(OCC_RES, "Plantae")] = [
        {"occurrenceID": "o1", "locality": "first"},
        {"occurrenceID": "o1", "locality": "second"},
    ]

    result = _ingest(_engine(store, gatekeeper, reader), OCC_RES)

    assert result.processing_stats.inserted == 1
    assert result.processing_stats.updated == 1
    assert result.document_count == 1
    assert store.get(Collection.RAW, "o1::occ_res")["raw_fields"]["locality"] == "second"


def test_taxa_are_scoped_per_kingdom(store, gatekeeper, reader):
    reader.records[(FLORA_TAXA, "Plantae")] = [{"taxonID": "1", "scientificName": "Aus bus"}]
    reader.records[(FLORA_TAXA, "Fungi")] = [{"taxonID": "2", "scientificName": "Cus dus"}]

    result = _ingest(_engine(store, gatekeeper, reader), FLORA_TAXA)

    assert result.kingdoms == ("Plantae", "Fungi")
    assert store.find_ids(Collection.RAW) == ["P1", "P2"]
    assert store.get(Collection.RAW, "P2")["kingdom"] == "Fungi"
    assert store.get(Collection.RUN_OUTCOMES, result.run_id)["process_type"] == "ingest_taxa"


def test_kingdom_filter_limits_reconciliation(store, gatekeeper, reader, metadata):
    engine = _engine(store, gatekeeper, reader)
    reader.records[(FLORA_TAXA, "Plantae")] = [{"taxonID": "1"}]
    reader.records[(FLORA_TAXA, "Fungi")] = [{"taxonID": "2"}]
    _ingest(engine, FLORA_TAXA)

    metadata.versions[FLORA_TAXA] = "2.0"
    reader.records[(FLORA_TAXA, "Plantae")] = []
    reader.records[(FLORA_TAXA, "Fungi")] = []
    reader.reads.clear()

    result = _ingest(engine, FLORA_TAXA, kingdom_filter=["fungi"])

    assert reader.reads == [(FLORA_TAXA, "Fungi")]
    assert result.kingdoms == ("Fungi",)
    assert result.processing_stats.removed == 1
    # The Plantae record was not read in this pass and stays staged.
    assert store.find_ids(Collection.RAW) == ["P1"]
    assert store.get(Collection.RESOURCE_STATES, FLORA_TAXA)["last_known_version"] == "1.0"


def test_version_check_error_propagates(store, gatekeeper, reader, metadata):
    metadata.unreachable.add(OCC_RES)
    with pytest.raises(VersionCheckError):
        _ingest(_engine(store, gatekeeper, reader), OCC_RES)
    assert store.count(Collection.RUN_OUTCOMES) == 0


def test_unknown_resource_is_configuration_error(store, gatekeeper, reader):
    with pytest.raises(ConfigurationError):
        _ingest(_engine(store, gatekeeper, reader), "no_such_resource")


def test_closed_store_is_configuration_error(registry, metadata, reader):
    closed = DocumentStore("sqlite://")
    engine = _engine(closed, VersionGatekeeper(closed, registry, metadata), reader)
    with pytest.raises(ConfigurationError):
        _ingest(engine, OCC_RES)
    assert metadata.calls == 0


def test_ingest_options_coerce_kingdom_filter():
    assert IngestOptions(kingdom_filter="Plantae").kingdom_filter == frozenset({"Plantae"})
    assert IngestOptions(kingdom_filter=[" Fungi ", ""]).kingdom_filter == frozenset({"Fungi"})
    assert IngestOptions(kingdom_filter=[]).kingdom_filter is None


def test_kingdom_filtered_pass_keeps_the_version_for_the_next_full_run(store, gatekeeper, reader, metadata):
    engine = _engine(store, gatekeeper, reader)
    reader.records[(FLORA_TAXA, "Plantae")] = [{"taxonID": "1"}]
    reader.records[(FLORA_TAXA, "Fungi")] = [{"taxonID": "2"}]
    _ingest(engine, FLORA_TAXA)

    metadata.versions[FLORA_TAXA] = "2.0"
    reader.records[(FLORA_TAXA, "Plantae")] = [{"taxonID": "1"}, {"taxonID": "3"}]

    partial = _ingest(engine, FLORA_TAXA, kingdom_filter=["Fungi"])
    assert partial.status is IngestStatus.SUCCESS
    assert store.get(Collection.RESOURCE_STATES, FLORA_TAXA)["last_known_version"] == "1.0"

    full = _ingest(engine, FLORA_TAXA)

    assert full.status is IngestStatus.SUCCESS
    assert full.processing_stats.inserted == 1
    assert store.find_ids(Collection.RAW) == ["P1", "P2", "P3"]
    assert store.get(Collection.RESOURCE_STATES, FLORA_TAXA)["last_known_version"] == "2.0"


def test_filter_covering_every_kingdom_records_the_version(store, gatekeeper, reader):
    reader.records[(OCC_RES, "Plantae")] = _occurrences("o1")

    result = _ingest(_engine(store, gatekeeper, reader), OCC_RES, kingdom_filter=["plantae"])

    assert result.status is IngestStatus.SUCCESS
    assert store.get(Collection.RESOURCE_STATES, OCC_RES)["last_known_version"] == "1.0"


def test_kingdom_filter_matching_nothing_is_configuration_error(store, gatekeeper, reader, metadata):
    with pytest.raises(ConfigurationError):
        _ingest(_engine(store, gatekeeper, reader), FLORA_TAXA, kingdom_filter=["Animalia"])
    assert metadata.calls == 0
    assert reader.reads == []
    assert store.count(Collection.RUN_OUTCOMES) == 0


def test_storage_fault_during_version_check_is_a_failure_result(monkeypatch, store, gatekeeper, reader):
    reader.records[(OCC_RES, "Plantae")] = _occurrences("o1")
    _fail_after(monkeypatch, store, "find", Collection.RESOURCE_STATES)

    result = _ingest(_engine(store, gatekeeper, reader), OCC_RES)

    assert result.status is IngestStatus.FAILURE
    assert result.error.startswith("StorageError")
    assert result.ipt_version is None
    assert reader.reads == []
    assert store.get(Collection.RUN_OUTCOMES, result.run_id)["status"] == "failure"


def test_systemic_storage_fault_aborts_and_keeps_committed_writes(monkeypatch, store, gatekeeper, reader):
    reader.records[(OCC_RES, "Plantae")] = _occurrences("o1", "o2", "o3", "o4")
    _fail_after(monkeypatch, store, "upsert", Collection.RAW, allowed=2)

    result = _ingest(_engine(store, gatekeeper, reader), OCC_RES)

    assert result.status is IngestStatus.FAILURE
    assert result.error.startswith("StorageError")
    assert result.processing_stats.inserted == 2
    assert store.find_ids(Collection.RAW) == ["o1::occ_res", "o2::occ_res"]
    assert store.get(Collection.RESOURCE_STATES, OCC_RES)["last_known_version"] is None
    assert store.get(Collection.RUN_OUTCOMES, result.run_id)["status"] == "failure"


def test_unsaved_outcome_on_a_skipped_run_is_a_failure_result(monkeypatch, store, gatekeeper, reader):
    engine = _engine(store, gatekeeper, reader)
    reader.records[(OCC_RES, "Plantae")] = _occurrences("o1")
    _ingest(engine, OCC_RES)
    _fail_after(monkeypatch, store, "insert", Collection.RUN_OUTCOMES)

    result = _ingest(engine, OCC_RES)

    assert result.status is IngestStatus.FAILURE
    assert result.error.startswith("StorageError")
    assert result.run_id is None
    assert store.count(Collection.RUN_OUTCOMES) == 1
