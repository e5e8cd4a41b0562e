"""Raw ingestion engine.

Moves one resource snapshot into raw staging:

1. Version gate. Unchanged upstream and no `force`: return `skipped` with
   zero counts and do no further work.
2. Stream every record of each requested kingdom through
   normalize -> assign id -> upsert. A record is `inserted` when nothing is
   staged under its id, `updated` when the staged content differs (or `force`
   is set), `unchanged` otherwise. Seeing an id twice in one pass counts as
   `updated`; the last record wins.
3. Reconciliation after a complete pass: staged ids of this resource, within
   the kingdoms that were read, that did not show up are deleted and counted
   `removed`.
4. The provider version is recorded only when the pass read every kingdom
   of the resource. A filtered pass that leaves a kingdom out never moves it;
   a filter that matches none of the kingdoms is a ConfigurationError.

Per-record problems (not a field-map, no usable identity, isolated storage
fault) are counted `failed` and never abort the pass. An unreadable archive or
a systemic storage fault (including one during the version check or while
saving the run outcome) ends the run with `status: failure`; writes already
committed stay (ids are idempotent, so a retry is safe). Dry runs do all the
counting and write nothing at all.

Callers must serialize runs per resource id; reconciliation is not safe under
concurrent runs of the same resource.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from app.core.errors import ConfigurationError, StorageError
from app.core.store import Collection, DocumentStore
from audit.core.run_metrics import RecordError, RunMetricsBuilder, RunOutcomeRecord
from ingestion.core.adapter import ArchiveReader
from ingestion.core.errors import FetchError, IdentityError, MalformedRecordError
from ingestion.core.identity import assign_record_id, normalize_fields
from ingestion.core.resource_registry import ResourceConfig, ResourceDescriptor
from ingestion.core.version_check import VersionCheckResult, VersionGatekeeper


UTC = timezone.utc
logger = logging.getLogger(__name__)


class IngestStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class RecordOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


class IngestOptions(BaseModel):
    """Run request for one resource.

    - force: bypass the needs_update gate and rewrite every staged record.
    - dry_run: compute and count, persist nothing.
    - kingdom_filter: read only these kingdoms (intersected with the resource's).
    """

    model_config = ConfigDict(frozen=True)

    force: bool = False
    dry_run: bool = False
    kingdom_filter: Optional[frozenset[str]] = None

    @field_validator("kingdom_filter", mode="before")
    @classmethod
    def _coerce_kingdoms(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            value = [value]
        cleaned = frozenset(str(k).strip() for k in value if str(k).strip())
        return cleaned or None


@dataclass(frozen=True, slots=True)
class ProcessingStats:
    total_from_ipt: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    removed: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_from_ipt": self.total_from_ipt,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "removed": self.removed,
            "failed": self.failed,
        }


@dataclass(frozen=True, slots=True)
class IngestResult:
    status: IngestStatus
    resource_id: str
    document_count: int
    duration: float
    ipt_version: Optional[str]
    processing_stats: ProcessingStats = field(default_factory=ProcessingStats)
    errors: tuple[RecordError, ...] = ()
    error: Optional[str] = None
    run_id: Optional[str] = None
    kingdoms: tuple[str, ...] = ()


def _record_ref(resource_id: str, kingdom: str, position: int, raw: Any) -> str:
    if isinstance(raw, Mapping):
        for key in ("occurrenceID", "taxonID", "catalogNumber"):
            value = raw.get(key)
            if isinstance(value, str) and value.strip():
                return f"{resource_id}:{kingdom}:{key}={value.strip()[:64]}"
    return f"{resource_id}:{kingdom}:#{position}"


class RawIngestionEngine:
    def __init__(
        self,
        store: DocumentStore,
        gatekeeper: VersionGatekeeper,
        reader: ArchiveReader,
        *,
        runner_id: Optional[str] = None,
        script_version: Optional[str] = None,
    ) -> None:
        self._store = store
        self._gatekeeper = gatekeeper
        self._reader = reader
        self._runner_id = runner_id
        self._script_version = script_version

    async def ingest(self, resource_id: str, options: Optional[IngestOptions] = None) -> IngestResult:
        options = options or IngestOptions()
        if not self._store.is_open:
            raise ConfigurationError("Document store is not open; refusing to start ingestion.")

        config = self._gatekeeper.resource_config(resource_id)
        kingdoms = self._select_kingdoms(config, options)
        metrics = RunMetricsBuilder(
            config.process_type,
            resource_id,
            runner_id=self._runner_id,
            version=self._script_version,
        )

        started = time.monotonic()
        try:
            # VersionCheckError / ConfigurationError go to the caller.
            check = await self._gatekeeper.check_version(resource_id, record=not options.dry_run)
            resource = self._gatekeeper.describe(resource_id)
        except StorageError as ex:
            logger.error("ingest %s aborted before reading: storage fault: %s", resource_id, ex)
            return self._result(metrics, options, started, IngestStatus.FAILURE, resource_id, error=f"StorageError: {ex}")

        if not check.needs_update and not options.force:
            logger.info("ingest %s skipped: version %s already ingested", resource_id, check.current_version)
            return self._result(metrics, options, started, IngestStatus.SKIPPED, resource_id, check=check)

        seen: set[str] = set()
        status = IngestStatus.SUCCESS
        error: Optional[str] = None
        complete = len(kingdoms) == len(config.kingdoms)

        try:
            for kingdom in kingdoms:
                records = self._reader.read_records(resource, kingdom)
                self._ingest_stream(resource, kingdom, records, seen, metrics, options, check)
            self._reconcile(resource_id, kingdoms, seen, metrics, options)
            # Only a pass over every configured kingdom records the version.
            if complete and not options.dry_run:
                self._gatekeeper.record_ingested_version(resource_id, check)
            elif not complete:
                logger.info(
                    "ingest %s read %s of %s; version %s not recorded",
                    resource_id,
                    kingdoms,
                    list(config.kingdoms),
                    check.current_version,
                )
        except FetchError as ex:
            status, error = IngestStatus.FAILURE, f"FetchError: {ex}"
            logger.error("ingest %s aborted: archive unreadable: %s", resource_id, ex)
        except StorageError as ex:
            status, error = IngestStatus.FAILURE, f"StorageError: {ex}"
            logger.error("ingest %s aborted: storage fault: %s", resource_id, ex)

        result = self._result(
            metrics,
            options,
            started,
            status,
            resource_id,
            check=check,
            error=error,
            document_count=len(seen),
            kingdoms=tuple(kingdoms),
        )
        logger.info(
            "ingest %s finished: status=%s stats=%s", resource_id, result.status.value, result.processing_stats.to_dict()
        )
        return result

    def _result(
        self,
        metrics: RunMetricsBuilder,
        options: IngestOptions,
        started: float,
        status: IngestStatus,
        resource_id: str,
        *,
        check: Optional[VersionCheckResult] = None,
        error: Optional[str] = None,
        document_count: int = 0,
        kingdoms: tuple[str, ...] = (),
    ) -> IngestResult:
        metrics.set_status(status.value)
        run_id, save_error = self._finish(metrics, options)
        if save_error is not None:
            status, error = IngestStatus.FAILURE, error or save_error

        stats = ProcessingStats(
            total_from_ipt=metrics.count("total_from_ipt"),
            inserted=metrics.count("inserted"),
            updated=metrics.count("updated"),
            unchanged=metrics.count("unchanged"),
            removed=metrics.count("removed"),
            failed=metrics.count("failed"),
        )
        return IngestResult(
            status=status,
            resource_id=resource_id,
            document_count=document_count,
            duration=time.monotonic() - started,
            ipt_version=check.current_version if check is not None else None,
            processing_stats=stats,
            errors=tuple(metrics.errors),
            error=error,
            run_id=run_id,
            kingdoms=kingdoms,
        )

    @staticmethod
    def _select_kingdoms(config: ResourceConfig, options: IngestOptions) -> list[str]:
        kingdoms = list(config.kingdoms)
        if options.kingdom_filter is None:
            return kingdoms
        wanted = {k.lower() for k in options.kingdom_filter}
        selected = [k for k in kingdoms if k.lower() in wanted]
        if not selected:
            raise ConfigurationError(
                f"Kingdom filter {sorted(options.kingdom_filter)} matches none of "
                f"{config.resource_id} kingdoms {kingdoms}."
            )
        return selected

    def _ingest_stream(
        self,
        resource: ResourceDescriptor,
        kingdom: str,
        records: Iterable[Any],
        seen: set[str],
        metrics: RunMetricsBuilder,
        options: IngestOptions,
        check: VersionCheckResult,
    ) -> None:
        for position, raw in enumerate(records):
            metrics.increment_total()
            ref = _record_ref(resource.resource_id, kingdom, position, raw)
            try:
                outcome = self._ingest_record(resource, kingdom, raw, seen, options, check.current_version)
            except (IdentityError, MalformedRecordError) as ex:
                metrics.increment_failed()
                metrics.add_error(ref, str(ex), code=ex.reason)
                logger.warning("record %s rejected: %s", ref, ex)
                continue
            except StorageError as ex:
                if ex.systemic:
                    raise
                metrics.increment_failed()
                metrics.add_error(ref, str(ex), code="StorageError")
                logger.warning("record %s not staged: %s", ref, ex)
                continue
            metrics.increment(outcome.value)

    def _ingest_record(
        self,
        resource: ResourceDescriptor,
        kingdom: str,
        raw: Any,
        seen: set[str],
        options: IngestOptions,
        ipt_version: Optional[str],
    ) -> RecordOutcome:
        if not isinstance(raw, Mapping):
            raise MalformedRecordError(f"expected a field-map, got {type(raw).__name__}")

        fields = normalize_fields(raw)
        record_id = assign_record_id(
            resource.config.record_type,
            fields,
            resource_id=resource.resource_id,
            kingdom=kingdom,
        )

        if record_id in seen:
            outcome = RecordOutcome.UPDATED
        else:
            seen.add(record_id)
            existing = self._store.get(Collection.RAW, record_id)
            if existing is None:
                outcome = RecordOutcome.INSERTED
            elif options.force or existing["raw_fields"] != fields or existing["kingdom"] != kingdom:
                outcome = RecordOutcome.UPDATED
            else:
                outcome = RecordOutcome.UNCHANGED

        if outcome is not RecordOutcome.UNCHANGED and not options.dry_run:
            self._store.upsert(
                Collection.RAW,
                record_id,
                {
                    "resource_id": resource.resource_id,
                    "kingdom": kingdom,
                    "record_type": resource.config.record_type,
                    "raw_fields": fields,
                    "ipt_version": ipt_version,
                    "source_url": resource.archive_url,
                    "fetched_at": datetime.now(tz=UTC),
                },
            )
        return outcome

    def _reconcile(
        self,
        resource_id: str,
        kingdoms: list[str],
        seen: set[str],
        metrics: RunMetricsBuilder,
        options: IngestOptions,
    ) -> None:
        # Only the kingdoms read in this pass; unfetched kingdoms keep their records.
        if not kingdoms:
            return
        staged = self._store.find_ids(Collection.RAW, {"resource_id": resource_id, "kingdom": list(kingdoms)})
        removed = [doc_id for doc_id in staged if doc_id not in seen]
        if removed and not options.dry_run:
            self._store.delete_many(Collection.RAW, removed)
        metrics.increment_removed(len(removed))

    def _finish(self, metrics: RunMetricsBuilder, options: IngestOptions) -> tuple[Optional[str], Optional[str]]:
        """Save the run outcome; returns (run_id, error). A failed save never raises."""
        if options.dry_run:
            return None, None
        try:
            outcome: RunOutcomeRecord = metrics.save(self._store)
        except StorageError as ex:
            logger.error("run outcome %s not saved (status=%s): %s", metrics.run_id, metrics.status, ex)
            return None, f"StorageError: {ex}"
        return outcome.run_id, None
