from __future__ import annotations

"""ArchiveReader contract.

Rules for readers:
- read_records() yields raw field-maps lazily; the sequence is finite and may
  not be restartable.
- Nested extension rows (distribution, vernacularname, ...) are lists of
  mappings under their extension name.
- Any failure to read the archive surfaces as FetchError; the engine treats it
  as fatal for the run.
"""

import abc
import importlib
from typing import Any, Callable, Iterable, Mapping

from app.core.errors import ConfigurationError
from ingestion.core.resource_registry import ResourceDescriptor


RawFieldMap = Mapping[str, Any]


class ArchiveReader(abc.ABC):
    """Source of raw records for one resource snapshot."""

    @abc.abstractmethod
    def read_records(self, resource: ResourceDescriptor, kingdom: str) -> Iterable[RawFieldMap]:
        """Yield the raw field-maps of `kingdom` from the resource's archive.

        MUST raise FetchError when the archive cannot be read.
        """


def load_archive_reader(dotted: str) -> ArchiveReader:
    """Resolve "package.module:factory" and call the factory with no arguments."""
    module_name, sep, attr = dotted.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"archive_reader must look like 'package.module:factory', got {dotted!r}")
    try:
        module = importlib.import_module(module_name)
        factory: Callable[[], Any] = getattr(module, attr)
    except (ImportError, AttributeError) as ex:
        raise ConfigurationError(f"Cannot import archive reader {dotted!r}: {ex}") from ex
    reader = factory()
    if not isinstance(reader, ArchiveReader):
        raise ConfigurationError(f"{dotted!r} did not return an ArchiveReader")
    return reader
