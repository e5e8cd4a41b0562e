"""RunOutcome model.

One row per ingestion or transform run, written once when the run finishes.
Rows are immutable and never deleted; the listeners below reject any update
or delete that reaches the ORM flush.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Float, Index, Text, event, inspect
from sqlalchemy.orm import Mapped, mapped_column, validates

from app.core.base import Base, DocumentMixin, JSONDocument, ensure_utc


class RunOutcomeImmutabilityError(RuntimeError):
    """Raised when an attempt is made to mutate or delete a RunOutcome."""


class RunOutcome(DocumentMixin, Base):
    """Immutable run summary (id = run_id)."""

    __tablename__ = "run_outcomes"

    # ingest_taxa | ingest_occurrences | transform
    process_type: Mapped[str] = mapped_column(Text, nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_seconds: Mapped[float] = mapped_column(Float, nullable=False)

    counts: Mapped[dict[str, int]] = mapped_column(JSONDocument, nullable=False)
    # Ordered [{record_ref, reason, code}]
    errors: Mapped[list[dict[str, Any]]] = mapped_column(JSONDocument, nullable=False)
    error_summary: Mapped[dict[str, int]] = mapped_column(JSONDocument, nullable=False)

    version: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    runner_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_run_outcomes_process_started", "process_type", "started_at"),
        Index("ix_run_outcomes_resource_id", "resource_id"),
    )

    @validates("started_at", "completed_at")
    def _validate_utc(self, key: str, value: datetime) -> datetime:
        return ensure_utc(key, value)


@event.listens_for(RunOutcome, "before_update", propagate=True)
def _run_outcome_prevent_updates(mapper, connection, target) -> None:
    state = inspect(target)
    if not state.persistent:
        return

    changed = [a.key for a in state.attrs if a.history.has_changes()]
    if changed:
        raise RunOutcomeImmutabilityError(
            "RunOutcome is immutable; updates are forbidden (changed: " + ", ".join(sorted(changed)) + ")."
        )


@event.listens_for(RunOutcome, "before_delete", propagate=True)
def _run_outcome_prevent_delete(mapper, connection, target) -> None:
    raise RunOutcomeImmutabilityError("RunOutcome deletion is forbidden; run history is append-only.")
