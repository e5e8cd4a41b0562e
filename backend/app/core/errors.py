from __future__ import annotations

"""Run-level errors shared by ingestion and transform.

Propagation policy:
- ConfigurationError is fatal and raised before any network activity.
- StorageError is isolated to one record unless `systemic` is set, in which
  case the run aborts and keeps already committed writes.
"""


class PipelineError(RuntimeError):
    """Base error for the biodiversity pipeline."""


class ConfigurationError(PipelineError):
    """Raised when required settings are missing or invalid."""

    def __init__(self, message: str, *, setting: str | None = None) -> None:
        super().__init__(message)
        self.setting = setting


class StorageError(PipelineError):
    """Raised when an upsert/delete/find against the document store fails."""

    def __init__(self, message: str, *, systemic: bool = False) -> None:
        super().__init__(message)
        self.systemic = systemic
