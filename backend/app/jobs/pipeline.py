"""Biodiversity pipeline orchestrator.

Run invocation surface for schedulers and CLIs:

    PipelineService
    ├── check_version(resource_id)      metadata only, records last check
    ├── ingest(resource_id, options)    version gate -> staging -> reconcile
    ├── transform(options)              staging -> canonical
    ├── count_pending(options)          sizing before a transform
    └── run(resource_id)                ingest, then transform that resource

Architecture:
- Cron-driven, stateless runs; safe to re-run (ids are deterministic).
- One explicit DocumentStore handle per process, opened and closed here.
- Failures are isolated per resource in `run_all`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from app.core.config import PipelineSettings, settings_from_env
from app.core.errors import ConfigurationError, PipelineError
from app.core.store import DocumentStore
from ingestion.core.adapter import ArchiveReader, load_archive_reader
from ingestion.core.raw_ingest import IngestOptions, IngestResult, IngestStatus, RawIngestionEngine
from ingestion.core.resource_registry import ResourceRegistry, load_resources_yaml
from ingestion.core.version_check import (
    HttpMetadataClient,
    MetadataClient,
    VersionCheckResult,
    VersionGatekeeper,
)
from transform.core.transform import TransformOptions, TransformPipeline, TransformResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ResourceRunResult:
    resource_id: str
    ingest: IngestResult
    transform: Optional[TransformResult] = None


class PipelineService:
    def __init__(
        self,
        settings: PipelineSettings,
        store: DocumentStore,
        registry: ResourceRegistry,
        *,
        metadata_client: Optional[MetadataClient] = None,
        archive_reader: Optional[ArchiveReader] = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._registry = registry
        self._archive_reader = archive_reader
        self._gatekeeper = VersionGatekeeper(
            store,
            registry,
            metadata_client or HttpMetadataClient(timeout_seconds=settings.metadata_timeout_seconds),
        )
        self._transformer = TransformPipeline(
            store,
            runner_id=settings.runner_id,
            script_version=settings.script_version,
        )

    @property
    def registry(self) -> ResourceRegistry:
        return self._registry

    def _reader_for(self, resource_id: str) -> ArchiveReader:
        if self._archive_reader is not None:
            return self._archive_reader
        dotted = self._registry.get(resource_id).archive_reader
        if not dotted:
            raise ConfigurationError(f"Resource {resource_id!r} has no archive_reader configured.")
        return load_archive_reader(dotted)

    async def check_version(self, resource_id: str) -> VersionCheckResult:
        return await self._gatekeeper.check_version(resource_id)

    async def ingest(self, resource_id: str, options: Optional[IngestOptions] = None) -> IngestResult:
        engine = RawIngestionEngine(
            self._store,
            self._gatekeeper,
            self._reader_for(resource_id),
            runner_id=self._settings.runner_id,
            script_version=self._settings.script_version,
        )
        return await engine.ingest(resource_id, options)

    async def transform(self, options: Optional[TransformOptions] = None) -> TransformResult:
        return await self._transformer.transform(options or self._default_transform_options())

    async def count_pending(self, options: Optional[TransformOptions] = None) -> int:
        return await self._transformer.count_pending(options or self._default_transform_options())

    def _default_transform_options(self, **overrides) -> TransformOptions:
        return TransformOptions(batch_size=self._settings.default_batch_size, **overrides)

    async def run(self, resource_id: str, *, force: bool = False, dry_run: bool = False) -> ResourceRunResult:
        """Ingest one resource, then transform its pending staged records."""
        ingest = await self.ingest(resource_id, IngestOptions(force=force, dry_run=dry_run))
        if ingest.status is not IngestStatus.SUCCESS:
            logger.info("run %s: transform not started (ingest %s)", resource_id, ingest.status.value)
            return ResourceRunResult(resource_id=resource_id, ingest=ingest)

        transform = await self.transform(
            self._default_transform_options(resource_filter=resource_id, dry_run=dry_run)
        )
        return ResourceRunResult(resource_id=resource_id, ingest=ingest, transform=transform)

    async def run_all(self, *, force: bool = False, dry_run: bool = False) -> list[ResourceRunResult]:
        results: list[ResourceRunResult] = []
        for resource in self._registry.enabled_resources():
            try:
                results.append(await self.run(resource.resource_id, force=force, dry_run=dry_run))
            except PipelineError as ex:
                # Isolated per resource; ConfigurationError / VersionCheckError land here.
                logger.error("run %s failed: %s: %s", resource.resource_id, type(ex).__name__, ex)
        return results


async def run_full_pipeline(settings: Optional[PipelineSettings] = None) -> list[ResourceRunResult]:
    """Main entry point for cron."""
    settings = settings or settings_from_env()
    settings.require_database_url()
    registry = load_resources_yaml(settings.sources_path)
    with DocumentStore.from_settings(settings) as store:
        service = PipelineService(settings, store, registry)
        return await service.run_all()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_full_pipeline())
