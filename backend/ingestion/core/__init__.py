"""Ingestion core primitives.

Raw ingestion for provider Darwin Core Archives:
- Version-gate every run on the provider's metadata
- Deterministic ids, so re-runs overwrite instead of duplicating
- Staged records mirror the last complete snapshot (reconciled removals)
"""

from ingestion.core.adapter import ArchiveReader, load_archive_reader
from ingestion.core.identity import assign_occurrence_id, assign_record_id, assign_taxon_id, normalize_value
from ingestion.core.raw_ingest import IngestOptions, IngestResult, IngestStatus, RawIngestionEngine
from ingestion.core.resource_registry import ResourceConfig, ResourceDescriptor, ResourceRegistry, load_resources_yaml
from ingestion.core.version_check import HttpMetadataClient, VersionCheckResult, VersionGatekeeper

__all__ = [
    "ArchiveReader",
    "load_archive_reader",
    "assign_occurrence_id",
    "assign_record_id",
    "assign_taxon_id",
    "normalize_value",
    "IngestOptions",
    "IngestResult",
    "IngestStatus",
    "RawIngestionEngine",
    "ResourceConfig",
    "ResourceDescriptor",
    "ResourceRegistry",
    "load_resources_yaml",
    "HttpMetadataClient",
    "VersionCheckResult",
    "VersionGatekeeper",
]
