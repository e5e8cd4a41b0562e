"""Transform pipeline: raw staging -> canonical records.

Candidates are raw records (optionally one resource / one record type), read
in id order in batches of `batch_size`. Each candidate ends in exactly one of:

- skipped:  `only_unprocessed` and its canonical record already carries
            `pipeline_version` (unless `force_reprocess`),
- success:  mapped normally,
- fallback: mapped with a degraded rule; reasons go into provenance,
- failure:  MappingError (or an isolated storage fault); the canonical record
            is left as it was and the error is kept.

Mapped records are enriched from the reference lists (see enrichment.py),
indexed once at the start of the run; `provenance.enrichment` names the keys
that were added.
Status is `success` with no failures, `partial` with some, `failure` when all
considered records failed or storage was unavailable. Batches never share an
id (keyset pages), and all counting goes through the run's metrics builder.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.core.errors import ConfigurationError, StorageError
from app.core.store import Collection, DocumentStore
from audit.core.run_metrics import RecordError, RunMetricsBuilder
from transform.core.enrichment import ReferenceIndex
from transform.core.errors import MappingError
from transform.core.mapping import MAPPING_VERSION, map_record


UTC = timezone.utc
logger = logging.getLogger(__name__)


class TransformStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


class TransformOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource_filter: Optional[str] = None
    record_type: Optional[str] = Field(default=None, pattern="^(taxon|occurrence)$")
    only_unprocessed: bool = True
    pipeline_version: str = MAPPING_VERSION
    batch_size: int = Field(default=500, ge=1)
    force_reprocess: bool = False
    dry_run: bool = False
    enrich: bool = True

    def raw_filters(self) -> dict[str, Any]:
        filters: dict[str, Any] = {}
        if self.resource_filter:
            filters["resource_id"] = self.resource_filter
        if self.record_type:
            filters["record_type"] = self.record_type
        return filters

    @property
    def skips_processed(self) -> bool:
        return self.only_unprocessed and not self.force_reprocess


@dataclass(frozen=True, slots=True)
class TransformResult:
    status: TransformStatus
    success_count: int
    failure_count: int
    fallback_count: int
    skipped_count: int
    pipeline_version: str
    duration: float
    processing_errors: tuple[RecordError, ...] = ()
    error: Optional[str] = None
    run_id: Optional[str] = None

    @property
    def total_considered(self) -> int:
        return self.success_count + self.failure_count + self.fallback_count + self.skipped_count


class TransformPipeline:
    def __init__(
        self,
        store: DocumentStore,
        *,
        runner_id: Optional[str] = None,
        script_version: Optional[str] = None,
    ) -> None:
        self._store = store
        self._runner_id = runner_id
        self._script_version = script_version

    async def transform(self, options: Optional[TransformOptions] = None) -> TransformResult:
        options = options or TransformOptions()
        self._require_open()

        started = time.monotonic()
        metrics = RunMetricsBuilder(
            "transform",
            options.resource_filter,
            runner_id=self._runner_id,
            version=self._script_version,
        )
        error: Optional[str] = None
        try:
            index = ReferenceIndex.load(self._store) if options.enrich else ReferenceIndex()
        except StorageError as ex:
            error = f"StorageError: {ex}"
            logger.error("transform aborted: reference lists unavailable: %s", ex)
        else:
            error = await self._run_batches(options, metrics, index)

        status = self._status(metrics, error)
        metrics.set_status(status.value)
        run_id = None
        if not options.dry_run:
            run_id, save_error = self._save(metrics)
            if save_error is not None:
                status, error = TransformStatus.FAILURE, error or save_error

        result = TransformResult(
            status=status,
            success_count=metrics.count("succeeded"),
            failure_count=metrics.count("failed"),
            fallback_count=metrics.count("fallback"),
            skipped_count=metrics.count("skipped"),
            pipeline_version=options.pipeline_version,
            duration=time.monotonic() - started,
            processing_errors=tuple(metrics.errors),
            error=error,
            run_id=run_id,
        )
        logger.info(
            "transform finished: status=%s success=%d fallback=%d failure=%d skipped=%d version=%s",
            status.value,
            result.success_count,
            result.fallback_count,
            result.failure_count,
            result.skipped_count,
            options.pipeline_version,
        )
        return result

    async def count_pending(self, options: Optional[TransformOptions] = None) -> int:
        """Number of candidates a transform with these options would not skip."""
        options = options or TransformOptions()
        self._require_open()

        filters = options.raw_filters()
        pending = 0
        after_id: Optional[str] = None
        while True:
            ids = self._store.find_ids(Collection.RAW, filters, limit=options.batch_size, after_id=after_id)
            if not ids:
                break
            after_id = ids[-1]
            pending += len(ids)
            if options.skips_processed:
                pending -= self._store.count(
                    Collection.CANONICAL,
                    {"id": ids, "pipeline_version": options.pipeline_version},
                )
            await asyncio.sleep(0)
        return pending

    def _require_open(self) -> None:
        if not self._store.is_open:
            raise ConfigurationError("Document store is not open; refusing to start transform.")

    async def _run_batches(
        self, options: TransformOptions, metrics: RunMetricsBuilder, index: ReferenceIndex
    ) -> Optional[str]:
        filters = options.raw_filters()
        after_id: Optional[str] = None
        while True:
            try:
                rows = self._store.find(Collection.RAW, filters, limit=options.batch_size, after_id=after_id)
                if not rows:
                    return None
                after_id = rows[-1]["id"]
                self._process_batch(rows, options, metrics, index)
            except StorageError as ex:
                logger.error("transform aborted after %d records: %s", metrics.count("processed"), ex)
                return f"StorageError: {ex}"
            # Let other tasks run between batches.
            await asyncio.sleep(0)

    def _process_batch(
        self,
        rows: list[dict[str, Any]],
        options: TransformOptions,
        metrics: RunMetricsBuilder,
        index: ReferenceIndex,
    ) -> None:
        done: set[str] = set()
        if options.skips_processed:
            current = self._store.find_ids(
                Collection.CANONICAL,
                {"id": [row["id"] for row in rows], "pipeline_version": options.pipeline_version},
            )
            done = set(current)

        for row in rows:
            metrics.increment_processed()
            record_id = row["id"]
            if record_id in done:
                metrics.increment_skipped()
                continue

            try:
                outcome = map_record(row["record_type"], row["kingdom"], row["raw_fields"])
            except MappingError as ex:
                metrics.increment_failed()
                metrics.add_error(record_id, str(ex), code=ex.step or "MappingError")
                logger.warning("record %s not mapped: %s", record_id, ex)
                continue

            fields = outcome.fields
            enrichment = index.enrich(record_id, row["record_type"], fields)
            if enrichment:
                fields = {**fields, **enrichment}

            if not options.dry_run:
                try:
                    self._store.upsert(
                        Collection.CANONICAL,
                        record_id,
                        {
                            "kingdom": row["kingdom"],
                            "record_type": row["record_type"],
                            "resource_id": row["resource_id"],
                            "pipeline_version": options.pipeline_version,
                            "mapped_fields": fields,
                            "provenance": {
                                "resource_id": row["resource_id"],
                                "pipeline_version": options.pipeline_version,
                                "ipt_version": row.get("ipt_version"),
                                "fallback_applied": outcome.fallback,
                                "fallback_reasons": list(outcome.fallback_reasons),
                                "enrichment": sorted(enrichment),
                            },
                            "transformed_at": datetime.now(tz=UTC),
                        },
                    )
                except StorageError as ex:
                    if ex.systemic:
                        raise
                    metrics.increment_failed()
                    metrics.add_error(record_id, str(ex), code="StorageError")
                    logger.warning("record %s not written: %s", record_id, ex)
                    continue

            if outcome.fallback:
                metrics.increment_fallback()
            else:
                metrics.increment_succeeded()

    @staticmethod
    def _status(metrics: RunMetricsBuilder, error: Optional[str]) -> TransformStatus:
        failed = metrics.count("failed")
        considered = metrics.count("processed")
        if error is not None:
            return TransformStatus.FAILURE
        if failed == 0:
            return TransformStatus.SUCCESS
        if failed < considered:
            return TransformStatus.PARTIAL
        return TransformStatus.FAILURE

    def _save(self, metrics: RunMetricsBuilder) -> tuple[Optional[str], Optional[str]]:
        try:
            return metrics.save(self._store).run_id, None
        except StorageError as ex:
            logger.error("run outcome %s not saved (status=%s): %s", metrics.run_id, metrics.status, ex)
            return None, f"StorageError: {ex}"
