"""Version gate for provider resources.

A run starts by asking the provider for the resource's EML metadata (never the
archive itself):

- `packageId="<id>/<version>"` on the root element carries the version token.
- `<pubDate>` (or the HTTP Last-Modified header) carries the last-modified
  stamp.

`needs_update` is true when the token differs from the persisted
`last_known_version` or none is on record. Network errors, non-2xx responses
and documents without a version token raise VersionCheckError; they are never
read as "no update".
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

import httpx
from bs4 import BeautifulSoup

from app.core.store import Collection, DocumentStore
from ingestion.core.errors import VersionCheckError
from ingestion.core.resource_registry import ResourceConfig, ResourceDescriptor, ResourceRegistry


UTC = timezone.utc
logger = logging.getLogger(__name__)

_PACKAGE_ID = re.compile(r"^(.+)/([^/]+)$")


@dataclass(frozen=True, slots=True)
class ResourceMetadata:
    version: str
    last_modified: Optional[str] = None
    package_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class VersionCheckResult:
    resource_id: str
    current_version: str
    needs_update: bool
    last_modified: Optional[str]
    previous_version: Optional[str] = None
    update_priority: str = "low"  # high|medium|low


class MetadataClient(Protocol):
    async def fetch_metadata(self, resource: ResourceDescriptor) -> ResourceMetadata:
        ...


def parse_eml(document: str, *, header_last_modified: Optional[str] = None) -> ResourceMetadata:
    """Extract version token and last-modified from an EML document.

    Raises ValueError when the document carries no usable version token.
    """
    soup = BeautifulSoup(document, "html.parser")
    # html.parser lowercases attribute names: packageId -> packageid.
    root = soup.find(attrs={"packageid": True})
    if root is None:
        raise ValueError("EML document has no packageId attribute")
    package_id = str(root.get("packageid") or "").strip()
    match = _PACKAGE_ID.match(package_id)
    if not match or not match.group(2).strip():
        raise ValueError(f"packageId {package_id!r} does not carry a version")

    pub_date = soup.find("pubdate")
    last_modified = pub_date.get_text(strip=True) if pub_date is not None else None
    return ResourceMetadata(
        version=match.group(2).strip(),
        last_modified=last_modified or header_last_modified,
        package_id=package_id,
    )


class HttpMetadataClient:
    """Fetches EML metadata over HTTP."""

    def __init__(self, *, timeout_seconds: float = 15.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self._timeout = timeout_seconds
        self._client = client

    async def fetch_metadata(self, resource: ResourceDescriptor) -> ResourceMetadata:
        url = resource.config.eml_url
        try:
            if self._client is not None:
                resp = await self._client.get(url, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
                    resp = await client.get(url)
        except httpx.HTTPError as ex:
            raise VersionCheckError(
                f"Metadata endpoint unreachable for {resource.resource_id}: {type(ex).__name__}",
                resource_id=resource.resource_id,
            ) from ex

        if resp.status_code >= 400:
            raise VersionCheckError(
                f"Metadata endpoint for {resource.resource_id} returned HTTP {resp.status_code}",
                resource_id=resource.resource_id,
            )

        try:
            return parse_eml(resp.text, header_last_modified=resp.headers.get("Last-Modified"))
        except ValueError as ex:
            raise VersionCheckError(
                f"Malformed metadata for {resource.resource_id}: {ex}",
                resource_id=resource.resource_id,
            ) from ex


def _version_parts(version: str) -> list[str]:
    return version.split(".")


def update_priority(previous: Optional[str], current: str) -> str:
    """high on first run or major change, medium on minor change, else low."""
    if not previous:
        return "high"
    old_parts = _version_parts(previous)
    new_parts = _version_parts(current)
    if old_parts[0] != new_parts[0]:
        return "high"
    old_minor = old_parts[1] if len(old_parts) > 1 else None
    new_minor = new_parts[1] if len(new_parts) > 1 else None
    if old_minor != new_minor:
        return "medium"
    return "low"


class VersionGatekeeper:
    def __init__(self, store: DocumentStore, registry: ResourceRegistry, client: MetadataClient) -> None:
        self._store = store
        self._registry = registry
        self._client = client

    def resource_config(self, resource_id: str) -> ResourceConfig:
        return self._registry.get(resource_id)

    def describe(self, resource_id: str) -> ResourceDescriptor:
        state = self._store.get(Collection.RESOURCE_STATES, resource_id)
        return self._registry.describe(resource_id, state)

    async def check_version(self, resource_id: str, *, record: bool = True) -> VersionCheckResult:
        resource = self.describe(resource_id)
        metadata = await self._client.fetch_metadata(resource)

        previous = resource.last_known_version
        result = VersionCheckResult(
            resource_id=resource_id,
            current_version=metadata.version,
            needs_update=previous is None or previous != metadata.version,
            last_modified=metadata.last_modified,
            previous_version=previous,
            update_priority=update_priority(previous, metadata.version),
        )

        if record:
            fields = {"last_checked_at": datetime.now(tz=UTC)}
            if metadata.last_modified is not None:
                fields["last_modified"] = metadata.last_modified
            self._store.upsert(Collection.RESOURCE_STATES, resource_id, fields)

        logger.info(
            "version check %s: current=%s previous=%s needs_update=%s",
            resource_id,
            result.current_version,
            previous,
            result.needs_update,
        )
        return result

    def record_ingested_version(self, resource_id: str, check: VersionCheckResult) -> None:
        self._store.upsert(
            Collection.RESOURCE_STATES,
            resource_id,
            {
                "last_known_version": check.current_version,
                "last_modified": check.last_modified,
                "last_ingested_at": datetime.now(tz=UTC),
            },
        )
