from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Generator, Iterable, Mapping, Optional

import pytest


ROOT = Path(__file__).resolve().parents[2]

# Ensure `backend/` packages are importable as top-level `app`, `ingestion`, ... for tests.
BACKEND_DIR = ROOT / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from app.core.store import DocumentStore  # noqa: E402
from ingestion.core.adapter import ArchiveReader  # noqa: E402
from ingestion.core.errors import FetchError, VersionCheckError  # noqa: E402
from ingestion.core.resource_registry import ResourceDescriptor, ResourceRegistry, parse_resources  # noqa: E402
from ingestion.core.version_check import ResourceMetadata, VersionGatekeeper  # noqa: E402


FLORA_TAXA = "flora_taxa"
OCC_RES = "occ_res"


class FakeArchiveReader(ArchiveReader):
    """In-memory archive: records[(resource_id, kingdom)] -> list of raw field-maps.

    `fail_after[(resource_id, kingdom)] = n` raises FetchError after n records.
    """

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], list[Any]] = {}
        self.fail_after: dict[tuple[str, str], int] = {}
        self.reads: list[tuple[str, str]] = []

    def read_records(self, resource: ResourceDescriptor, kingdom: str) -> Iterable[Mapping[str, Any]]:
        key = (resource.resource_id, kingdom)
        self.reads.append(key)
        limit = self.fail_after.get(key)
        for position, record in enumerate(self.records.get(key, [])):
            if limit is not None and position >= limit:
                raise FetchError(f"connection reset while reading {resource.resource_id}/{kingdom}")
            yield record
        if limit is not None and limit >= len(self.records.get(key, [])):
            raise FetchError(f"archive truncated for {resource.resource_id}/{kingdom}")


class FakeMetadataClient:
    def __init__(self, versions: Optional[dict[str, str]] = None) -> None:
        self.versions: dict[str, str] = dict(versions or {})
        self.unreachable: set[str] = set()
        self.calls = 0

    async def fetch_metadata(self, resource: ResourceDescriptor) -> ResourceMetadata:
        self.calls += 1
        if resource.resource_id in self.unreachable:
            raise VersionCheckError("metadata endpoint unreachable", resource_id=resource.resource_id)
        return ResourceMetadata(
            version=self.versions.get(resource.resource_id, "1.0"),
            last_modified="2024-01-15",
            package_id=f"{resource.resource_id}/{self.versions.get(resource.resource_id, '1.0')}",
        )


def make_empty_reader() -> ArchiveReader:
    return FakeArchiveReader()


@pytest.fixture()
def store() -> Generator[DocumentStore, None, None]:
    """Fresh in-memory document store per test."""
    s = DocumentStore("sqlite://").open()
    s.create_schema()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def registry() -> ResourceRegistry:
    return parse_resources(
        {
            "resources": {
                FLORA_TAXA: {
                    "archive_url": "https://ipt.example.org/ipt/archive.do?r=flora_taxa",
                    "kingdoms": ["Plantae", "Fungi"],
                    "record_type": "taxon",
                },
                OCC_RES: {
                    "archive_url": "https://ipt.example.org/ipt/archive.do?r=occ_res",
                    "kingdoms": ["Plantae"],
                    "record_type": "occurrence",
                },
                "disabled_res": {
                    "archive_url": "https://ipt.example.org/ipt/archive.do?r=disabled_res",
                    "kingdoms": ["Animalia"],
                    "record_type": "taxon",
                    "enabled": False,
                },
            }
        }
    )


@pytest.fixture()
def reader() -> FakeArchiveReader:
    return FakeArchiveReader()


@pytest.fixture()
def metadata() -> FakeMetadataClient:
    return FakeMetadataClient()


@pytest.fixture()
def gatekeeper(store: DocumentStore, registry: ResourceRegistry, metadata: FakeMetadataClient) -> VersionGatekeeper:
    return VersionGatekeeper(store, registry, metadata)
