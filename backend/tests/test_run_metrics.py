from __future__ import annotations

import threading

import pytest

from app.core.errors import PipelineError, StorageError
from app.core.store import Collection
from app.models import RunOutcomeImmutabilityError
from audit.core.run_metrics import COUNTERS, RunMetricsBuilder


def test_builder_rejects_unknown_process_type():
    with pytest.raises(ValueError):
        RunMetricsBuilder("ingest_everything")


def test_build_folds_counters_and_errors():
    metrics = RunMetricsBuilder("ingest_occurrences", "occ_res", runner_id="r1", version="v1")
    metrics.increment_total(3)
    metrics.increment_inserted(2)
    metrics.increment_failed()
    metrics.add_error("occ_res:Plantae:#2", "InsufficientFallbackFields: no key", code="InsufficientFallbackFields")
    metrics.add_error("occ_res:Plantae:#5", "odd row")
    metrics.set_status("success")

    outcome = metrics.build()

    assert outcome.run_id == metrics.run_id
    assert set(outcome.counts) == set(COUNTERS)
    assert outcome.counts["total_from_ipt"] == 3
    assert outcome.counts["inserted"] == 2
    assert outcome.counts["failed"] == 1
    assert outcome.counts["removed"] == 0
    assert outcome.error_summary == {"InsufficientFallbackFields": 1, "odd row": 1}
    assert [e.record_ref for e in outcome.errors] == ["occ_res:Plantae:#2", "occ_res:Plantae:#5"]
    assert outcome.completed_at >= outcome.started_at
    assert outcome.duration_seconds >= 0
    assert outcome.runner_id == "r1"
    assert outcome.version == "v1"


def test_unknown_counter():
    with pytest.raises(KeyError):
        RunMetricsBuilder("transform").increment("bogus")


def test_concurrent_increments_are_not_lost():
    metrics = RunMetricsBuilder("transform")

    def work() -> None:
        for _ in range(1000):
            metrics.increment_processed()
            metrics.increment_succeeded()

    threads = [threading.Thread(target=work) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert metrics.count("processed") == 4000
    assert metrics.count("succeeded") == 4000


def test_save_persists_exactly_once(store):
    metrics = RunMetricsBuilder("transform", runner_id="r1", version="v1")
    metrics.increment_processed(5)
    metrics.set_status("partial")

    saved = metrics.save(store)

    doc = store.get(Collection.RUN_OUTCOMES, saved.run_id)
    assert doc["status"] == "partial"
    assert doc["counts"]["processed"] == 5
    assert doc["errors"] == []

    with pytest.raises(PipelineError):
        metrics.save(store)
    assert store.count(Collection.RUN_OUTCOMES) == 1


def test_run_outcomes_are_immutable(store):
    saved = RunMetricsBuilder("ingest_taxa", "flora_taxa").save(store)

    with pytest.raises(RunOutcomeImmutabilityError):
        store.upsert(Collection.RUN_OUTCOMES, saved.run_id, {"status": "failure"})
    with pytest.raises(RunOutcomeImmutabilityError):
        store.delete(Collection.RUN_OUTCOMES, saved.run_id)
    with pytest.raises(StorageError):
        store.delete_many(Collection.RUN_OUTCOMES, [saved.run_id])
    with pytest.raises(StorageError):
        store.insert(Collection.RUN_OUTCOMES, saved.run_id, saved.to_document())

    assert store.get(Collection.RUN_OUTCOMES, saved.run_id)["status"] == "success"
