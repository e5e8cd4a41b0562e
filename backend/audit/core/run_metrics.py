"""Run metrics accumulator.

One builder per run, owned by the run. Counters go through a lock so batches
may share it. Nothing is visible outside until `save()` folds the counters
into an immutable RunOutcomeRecord and inserts exactly one run_outcomes row.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from app.core.errors import PipelineError
from app.core.store import Collection, DocumentStore


UTC = timezone.utc
logger = logging.getLogger(__name__)

PROCESS_TYPES = ("ingest_taxa", "ingest_occurrences", "transform")

COUNTERS = (
    "total_from_ipt",
    "processed",
    "succeeded",
    "inserted",
    "updated",
    "unchanged",
    "removed",
    "failed",
    "fallback",
    "skipped",
)


@dataclass(frozen=True, slots=True)
class RecordError:
    record_ref: str
    reason: str
    code: Optional[str] = None

    def to_document(self) -> dict[str, Any]:
        return {"record_ref": self.record_ref, "reason": self.reason, "code": self.code}


@dataclass(frozen=True, slots=True)
class RunOutcomeRecord:
    run_id: str
    process_type: str
    resource_id: Optional[str]
    status: str
    started_at: datetime
    completed_at: datetime
    duration_seconds: float
    counts: dict[str, int] = field(default_factory=dict)
    errors: tuple[RecordError, ...] = ()
    error_summary: dict[str, int] = field(default_factory=dict)
    version: Optional[str] = None
    runner_id: Optional[str] = None

    def to_document(self) -> dict[str, Any]:
        return {
            "process_type": self.process_type,
            "resource_id": self.resource_id,
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
            "counts": dict(self.counts),
            "errors": [e.to_document() for e in self.errors],
            "error_summary": dict(self.error_summary),
            "version": self.version,
            "runner_id": self.runner_id,
        }


class RunMetricsBuilder:
    def __init__(
        self,
        process_type: str,
        resource_id: Optional[str] = None,
        *,
        runner_id: Optional[str] = None,
        version: Optional[str] = None,
    ) -> None:
        if process_type not in PROCESS_TYPES:
            raise ValueError(f"process_type must be one of {PROCESS_TYPES}, got {process_type!r}")
        self.run_id = str(uuid.uuid4())
        self.process_type = process_type
        self.resource_id = resource_id
        self.started_at = datetime.now(tz=UTC)
        self._lock = threading.Lock()
        self._counts = {name: 0 for name in COUNTERS}
        self._errors: list[RecordError] = []
        self._error_summary: dict[str, int] = {}
        self._status = "success"
        self._version = version
        self._runner_id = runner_id
        self._saved: Optional[RunOutcomeRecord] = None

    # counters

    def increment(self, name: str, count: int = 1) -> None:
        if name not in self._counts:
            raise KeyError(f"unknown counter {name!r}")
        with self._lock:
            self._counts[name] += count

    def increment_total(self, count: int = 1) -> None:
        self.increment("total_from_ipt", count)

    def increment_processed(self, count: int = 1) -> None:
        self.increment("processed", count)

    def increment_succeeded(self, count: int = 1) -> None:
        self.increment("succeeded", count)

    def increment_inserted(self, count: int = 1) -> None:
        self.increment("inserted", count)

    def increment_updated(self, count: int = 1) -> None:
        self.increment("updated", count)

    def increment_unchanged(self, count: int = 1) -> None:
        self.increment("unchanged", count)

    def increment_removed(self, count: int = 1) -> None:
        self.increment("removed", count)

    def increment_failed(self, count: int = 1) -> None:
        self.increment("failed", count)

    def increment_fallback(self, count: int = 1) -> None:
        self.increment("fallback", count)

    def increment_skipped(self, count: int = 1) -> None:
        self.increment("skipped", count)

    def add_error(self, record_ref: str, reason: str, code: Optional[str] = None) -> None:
        key = code or reason
        with self._lock:
            self._errors.append(RecordError(record_ref=record_ref, reason=reason, code=code))
            self._error_summary[key] = self._error_summary.get(key, 0) + 1

    # run attributes

    @property
    def status(self) -> str:
        return self._status

    def set_status(self, status: str) -> None:
        self._status = status

    def set_version(self, version: Optional[str]) -> None:
        self._version = version

    def set_runner_id(self, runner_id: Optional[str]) -> None:
        self._runner_id = runner_id

    def count(self, name: str) -> int:
        with self._lock:
            return self._counts[name]

    @property
    def errors(self) -> list[RecordError]:
        with self._lock:
            return list(self._errors)

    # outcome

    def build(self, *, completed_at: Optional[datetime] = None) -> RunOutcomeRecord:
        completed = completed_at or datetime.now(tz=UTC)
        with self._lock:
            return RunOutcomeRecord(
                run_id=self.run_id,
                process_type=self.process_type,
                resource_id=self.resource_id,
                status=self._status,
                started_at=self.started_at,
                completed_at=completed,
                duration_seconds=max((completed - self.started_at).total_seconds(), 0.0),
                counts=dict(self._counts),
                errors=tuple(self._errors),
                error_summary=dict(self._error_summary),
                version=self._version,
                runner_id=self._runner_id,
            )

    def save(self, store: DocumentStore) -> RunOutcomeRecord:
        """Stamp completed_at, compute duration and persist the outcome once."""
        if self._saved is not None:
            raise PipelineError(f"run outcome {self.run_id} was already saved")
        outcome = self.build()
        record_run_outcome(store, outcome)
        self._saved = outcome
        return outcome


def record_run_outcome(store: DocumentStore, outcome: RunOutcomeRecord) -> None:
    store.insert(Collection.RUN_OUTCOMES, outcome.run_id, outcome.to_document())
    logger.info(
        "run outcome saved: run_id=%s process_type=%s resource_id=%s status=%s",
        outcome.run_id,
        outcome.process_type,
        outcome.resource_id,
        outcome.status,
    )
