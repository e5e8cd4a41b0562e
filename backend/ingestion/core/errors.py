from __future__ import annotations

"""Ingestion errors.

Run-level (propagate or end the run):
- VersionCheckError: provider metadata unreachable or malformed.
- FetchError: archive unreadable; the run ends with status failure.

Record-level (caught at the record boundary, counted as failed):
- IdentityError, MalformedRecordError.
"""

from app.core.errors import PipelineError


class IngestionError(PipelineError):
    """Base error for ingestion."""


class VersionCheckError(IngestionError):
    """Raised when resource metadata cannot be fetched or parsed."""

    def __init__(self, message: str, *, resource_id: str | None = None) -> None:
        super().__init__(message)
        self.resource_id = resource_id


class FetchError(IngestionError):
    """Raised by an archive reader when the snapshot cannot be read."""


class IdentityError(IngestionError):
    """Raised when a record cannot be given a stable identifier.

    `reason` is one of MissingPrimaryKey, InsufficientFallbackFields,
    MissingResourceId, UnknownSourceTag.
    """

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(f"{reason}: {message}" if message else reason)
        self.reason = reason


class MalformedRecordError(IngestionError):
    """Raised when the archive reader yields something that is not a field-map."""

    reason = "MalformedRecord"
