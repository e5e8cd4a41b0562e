from __future__ import annotations

"""Resource registry and YAML loader.

- Resources are switched on/off without code changes.
- The metadata (EML) URL defaults to the archive URL with `archive.do`
  replaced by `eml.do`.
- Persisted version state is joined in by `describe()`; the registry itself is
  static configuration.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from app.core.errors import ConfigurationError


RECORD_TYPES = ("taxon", "occurrence")


@dataclass(frozen=True, slots=True)
class ResourceConfig:
    resource_id: str
    archive_url: str
    kingdoms: tuple[str, ...]
    record_type: str  # taxon|occurrence
    enabled: bool = True
    name: Optional[str] = None
    metadata_url: Optional[str] = None
    archive_reader: Optional[str] = None  # "package.module:factory"

    @property
    def eml_url(self) -> str:
        if self.metadata_url:
            return self.metadata_url
        return self.archive_url.replace("archive.do", "eml.do")

    @property
    def process_type(self) -> str:
        return "ingest_taxa" if self.record_type == "taxon" else "ingest_occurrences"


@dataclass(frozen=True, slots=True)
class ResourceDescriptor:
    """Static resource configuration plus its persisted version state."""

    config: ResourceConfig
    last_known_version: Optional[str] = None
    last_modified: Optional[str] = None
    last_checked_at: Optional[datetime] = None

    @property
    def resource_id(self) -> str:
        return self.config.resource_id

    @property
    def archive_url(self) -> str:
        return self.config.archive_url

    @property
    def kingdom_set(self) -> frozenset[str]:
        return frozenset(self.config.kingdoms)


@dataclass(frozen=True, slots=True)
class ResourceRegistry:
    resources: list[ResourceConfig] = field(default_factory=list)

    def enabled_resources(self) -> list[ResourceConfig]:
        return sorted((r for r in self.resources if r.enabled), key=lambda r: r.resource_id)

    def get(self, resource_id: str) -> ResourceConfig:
        for resource in self.resources:
            if resource.resource_id == resource_id:
                return resource
        raise ConfigurationError(f"Unknown resource {resource_id!r}; add it to the resource registry.")

    def describe(self, resource_id: str, state: Optional[Mapping[str, Any]] = None) -> ResourceDescriptor:
        state = state or {}
        return ResourceDescriptor(
            config=self.get(resource_id),
            last_known_version=state.get("last_known_version"),
            last_modified=state.get("last_modified"),
            last_checked_at=state.get("last_checked_at"),
        )


def _kingdoms(value: Any, key: str) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not value:
        raise ConfigurationError(f"Resource {key!r}: 'kingdoms' must be a non-empty list.")
    return tuple(str(k).strip() for k in value if str(k).strip())


def parse_resources(raw: Any) -> ResourceRegistry:
    if not isinstance(raw, dict) or not isinstance(raw.get("resources"), dict):
        raise ConfigurationError("Invalid resources.yaml: expected top-level mapping with 'resources'.")

    resources: list[ResourceConfig] = []
    for key, cfg in raw["resources"].items():
        if not isinstance(cfg, dict):
            continue
        archive_url = str(cfg.get("archive_url") or "").strip()
        if not archive_url:
            raise ConfigurationError(f"Resource {key!r}: 'archive_url' is required.")
        record_type = str(cfg.get("record_type", "occurrence"))
        if record_type not in RECORD_TYPES:
            raise ConfigurationError(f"Resource {key!r}: record_type must be one of {RECORD_TYPES}.")
        resources.append(
            ResourceConfig(
                resource_id=str(key),
                archive_url=archive_url,
                kingdoms=_kingdoms(cfg.get("kingdoms"), str(key)),
                record_type=record_type,
                enabled=bool(cfg.get("enabled", True)),
                name=str(cfg["name"]) if cfg.get("name") is not None else None,
                metadata_url=str(cfg["metadata_url"]) if cfg.get("metadata_url") else None,
                archive_reader=str(cfg["archive_reader"]) if cfg.get("archive_reader") else None,
            )
        )

    return ResourceRegistry(resources=resources)


def load_resources_yaml(path: Path) -> ResourceRegistry:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as ex:
        raise ConfigurationError(f"Cannot read resource registry {path}: {ex}") from ex
    except yaml.YAMLError as ex:
        raise ConfigurationError(f"Invalid YAML in resource registry {path}: {ex}") from ex
    return parse_resources(raw)
