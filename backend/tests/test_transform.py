from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from app.core.errors import ConfigurationError, StorageError
from app.core.store import Collection, DocumentStore
from conftest import FLORA_TAXA, OCC_RES
from transform.core.mapping import MAPPING_VERSION
from transform.core.transform import TransformOptions, TransformPipeline, TransformStatus


UTC = timezone.utc


def _stage(store: DocumentStore, doc_id: str, raw_fields, *, resource_id=FLORA_TAXA, kingdom="Plantae", record_type="taxon"):
    store.upsert(
        Collection.RAW,
        doc_id,
        {
            "resource_id": resource_id,
            "kingdom": kingdom,
            "record_type": record_type,
            "raw_fields": raw_fields,
            "ipt_version": "1.0",
            "source_url": "https://ipt.example.org/ipt/archive.do?r=" + resource_id,
            "fetched_at": datetime.now(tz=UTC),
        },
    )


def _good(i: int) -> dict:
    return {"taxonID": str(i), "taxonRank": "ESPECIE", "genus": "Aus", "specificEpithet": f"sp{i}"}


def _seed_mixed(store: DocumentStore) -> None:
    # 7 clean, 1 fallback (no rank), 2 unmappable (unsupported rank).
    for i in range(1, 8):
        _stage(store, f"P{i}", _good(i))
    _stage(store, "P8", {"taxonID": "8", "genus": "Aus", "specificEpithet": "sp8"})
    _stage(store, "P9", {**_good(9), "taxonRank": "GENERO"})
    _stage(store, "P10", {**_good(10), "taxonRank": "FAMILIA"})


def _pipeline(store: DocumentStore) -> TransformPipeline:
    return TransformPipeline(store, runner_id="test-runner", script_version="abc123")


def _run(store: DocumentStore, **options):
    return asyncio.run(_pipeline(store).transform(TransformOptions(**options)))


def test_mixed_batch_is_partial(store):
    _seed_mixed(store)

    result = _run(store, batch_size=3)

    assert result.status is TransformStatus.PARTIAL
    assert (result.success_count, result.fallback_count, result.failure_count, result.skipped_count) == (7, 1, 2, 0)
    assert result.total_considered == 10
    assert result.pipeline_version == MAPPING_VERSION
    assert sorted(e.record_ref for e in result.processing_errors) == ["P10", "P9"]
    assert {e.code for e in result.processing_errors} == {"taxon_rank"}

    assert store.count(Collection.CANONICAL) == 8
    assert store.get(Collection.CANONICAL, "P9") is None

    outcome = store.get(Collection.RUN_OUTCOMES, result.run_id)
    assert outcome["process_type"] == "transform"
    assert outcome["status"] == "partial"
    assert outcome["counts"]["processed"] == 10
    assert outcome["counts"]["succeeded"] == 7
    assert outcome["counts"]["fallback"] == 1
    assert outcome["error_summary"] == {"taxon_rank": 2}


def test_canonical_record_provenance(store):
    _seed_mixed(store)
    _run(store)

    clean = store.get(Collection.CANONICAL, "P1")
    assert clean["pipeline_version"] == MAPPING_VERSION
    assert clean["mapped_fields"]["canonicalName"] == "Aus sp1"
    assert clean["provenance"] == {
        "resource_id": FLORA_TAXA,
        "pipeline_version": MAPPING_VERSION,
        "ipt_version": "1.0",
        "fallback_applied": False,
        "fallback_reasons": [],
        "enrichment": [],
    }

    degraded = store.get(Collection.CANONICAL, "P8")
    assert degraded["provenance"]["fallback_applied"] is True
    assert degraded["provenance"]["fallback_reasons"] == ["taxonRank absent"]


def test_second_run_skips_current_records(store):
    _seed_mixed(store)
    _run(store)

    again = _run(store)

    assert again.skipped_count == 8
    assert again.failure_count == 2
    assert again.success_count == again.fallback_count == 0
    assert again.total_considered == 10


def test_fully_processed_run_is_success(store):
    for i in range(1, 4):
        _stage(store, f"P{i}", _good(i))
    _run(store)

    again = _run(store)

    assert again.status is TransformStatus.SUCCESS
    assert again.skipped_count == 3
    assert again.success_count == 0


def test_force_reprocess_and_version_bump_remap(store):
    _seed_mixed(store)
    _run(store)

    forced = _run(store, force_reprocess=True)
    assert (forced.success_count, forced.fallback_count, forced.failure_count, forced.skipped_count) == (7, 1, 2, 0)

    bumped = _run(store, pipeline_version="2099.1.0")
    assert bumped.skipped_count == 0
    assert bumped.success_count == 7
    assert store.get(Collection.CANONICAL, "P1")["pipeline_version"] == "2099.1.0"
    assert store.count(Collection.CANONICAL) == 8


def test_all_records_option_disables_skipping(store):
    _stage(store, "P1", _good(1))
    _run(store)

    result = _run(store, only_unprocessed=False)
    assert result.skipped_count == 0
    assert result.success_count == 1


def test_dry_run_writes_nothing(store):
    _seed_mixed(store)

    result = _run(store, dry_run=True)

    assert result.status is TransformStatus.PARTIAL
    assert result.success_count == 7
    assert result.run_id is None
    assert store.count(Collection.CANONICAL) == 0
    assert store.count(Collection.RUN_OUTCOMES) == 0


def test_all_failures_is_failure(store):
    _stage(store, "P1", {**_good(1), "taxonRank": "GENERO"})
    _stage(store, "P2", ["broken", "payload"])

    result = _run(store)

    assert result.status is TransformStatus.FAILURE
    assert result.failure_count == 2
    codes = {e.record_ref: e.code for e in result.processing_errors}
    assert codes == {"P1": "taxon_rank", "P2": "payload"}


def test_empty_staging_is_success(store):
    result = _run(store)
    assert result.status is TransformStatus.SUCCESS
    assert result.total_considered == 0


def test_filters_by_resource_and_record_type(store):
    _stage(store, "P1", _good(1))
    _stage(store, "o1::occ_res", {"occurrenceID": "o1"}, resource_id=OCC_RES, record_type="occurrence")

    by_resource = _run(store, resource_filter=OCC_RES)
    assert by_resource.success_count == 1
    assert store.find_ids(Collection.CANONICAL) == ["o1::occ_res"]
    assert store.get(Collection.RUN_OUTCOMES, by_resource.run_id)["resource_id"] == OCC_RES

    by_type = _run(store, record_type="taxon")
    assert by_type.success_count == 1
    assert store.find_ids(Collection.CANONICAL) == ["P1", "o1::occ_res"]


def test_count_pending(store):
    _seed_mixed(store)
    pipeline = _pipeline(store)

    assert asyncio.run(pipeline.count_pending(TransformOptions(batch_size=4))) == 10
    asyncio.run(pipeline.transform(TransformOptions()))
    assert asyncio.run(pipeline.count_pending(TransformOptions(batch_size=4))) == 2
    assert asyncio.run(pipeline.count_pending(TransformOptions(force_reprocess=True))) == 10


def test_invalid_options_are_rejected():
    with pytest.raises(ValueError):
        TransformOptions(batch_size=0)
    with pytest.raises(ValueError):
        TransformOptions(record_type="specimen")


def test_closed_store_is_configuration_error():
    with pytest.raises(ConfigurationError):
        asyncio.run(_pipeline(DocumentStore("sqlite://")).transform())


def test_seven_clean_two_degraded_one_unmappable(store):
    for i in range(1, 8):
        _stage(store, f"P{i}", _good(i))
    _stage(store, "P8", {"taxonID": "8", "genus": "Aus", "specificEpithet": "sp8"})
    _stage(store, "P9", {"taxonID": "9", "genus": "Aus", "specificEpithet": "sp9"})
    _stage(store, "P10", {**_good(10), "taxonRank": "GENERO"})

    result = _run(store)

    assert result.status is TransformStatus.PARTIAL
    assert (result.success_count, result.fallback_count, result.failure_count) == (7, 2, 1)
    assert len(result.processing_errors) == 1
    assert result.processing_errors[0].record_ref == "P10"
    assert store.count(Collection.CANONICAL) == 9


def test_failed_remap_leaves_previous_canonical_record(store):
    _stage(store, "P1", _good(1))
    _run(store)
    before = store.get(Collection.CANONICAL, "P1")

    _stage(store, "P1", {**_good(1), "taxonRank": "GENERO"})
    result = _run(store, force_reprocess=True, pipeline_version="2099.1.0")

    assert result.status is TransformStatus.FAILURE
    assert result.failure_count == 1
    after = store.get(Collection.CANONICAL, "P1")
    assert after == before
    assert after["pipeline_version"] == MAPPING_VERSION


def test_systemic_storage_fault_ends_the_run(monkeypatch, store):
    for i in range(1, 6):
        _stage(store, f"P{i}", _good(i))
    real_upsert = store.upsert
    writes = {"n": 0}

    def upsert(collection, doc_id, fields):
        if collection is Collection.CANONICAL:
            writes["n"] += 1
            if writes["n"] > 3:
                raise StorageError("upsert on canonical_records failed: OperationalError", systemic=True)
        return real_upsert(collection, doc_id, fields)

    monkeypatch.setattr(store, "upsert", upsert)

    result = _run(store, batch_size=2)

    assert result.status is TransformStatus.FAILURE
    assert result.error.startswith("StorageError")
    assert result.success_count == 3
    assert store.find_ids(Collection.CANONICAL) == ["P1", "P2", "P3"]
    assert store.get(Collection.RUN_OUTCOMES, result.run_id)["status"] == "failure"
