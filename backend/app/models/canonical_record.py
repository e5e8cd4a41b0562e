"""CanonicalRecord model.

Exactly one canonical row per assigned id, written only by the transform
pipeline and overwritten on re-transform. `pipeline_version` is lifted out of
the provenance document so staleness checks can filter on it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, Text
from sqlalchemy.orm import Mapped, mapped_column, validates

from app.core.base import Base, DocumentMixin, JSONDocument, ensure_utc


class CanonicalRecord(DocumentMixin, Base):
    __tablename__ = "canonical_records"

    kingdom: Mapped[str] = mapped_column(Text, nullable=False)
    record_type: Mapped[str] = mapped_column(Text, nullable=False)
    resource_id: Mapped[str] = mapped_column(Text, nullable=False)
    pipeline_version: Mapped[str] = mapped_column(Text, nullable=False)

    mapped_fields: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    # {resource_id, pipeline_version, ipt_version, fallback_applied, fallback_reasons}
    provenance: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)

    transformed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_canonical_records_resource_id", "resource_id"),
        Index("ix_canonical_records_pipeline_version", "pipeline_version"),
    )

    @validates("transformed_at")
    def _validate_utc(self, key: str, value: datetime) -> datetime:
        return ensure_utc(key, value)
