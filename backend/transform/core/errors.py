from __future__ import annotations

"""Transform errors.

- A MappingError is caught at the record boundary: the record counts as
  `failure`, its canonical row is left untouched and the run continues.
- Run-level problems surface as StorageError / ConfigurationError from
  app.core.errors.
"""

from app.core.errors import PipelineError


class TransformError(PipelineError):
    """Base error for the transform pipeline."""


class MappingError(TransformError):
    """Raised when a raw record cannot be mapped into canonical form at all."""

    def __init__(self, reason: str, *, step: str | None = None) -> None:
        super().__init__(f"{step}: {reason}" if step else reason)
        self.reason = reason
        self.step = step
