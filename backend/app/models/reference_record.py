"""ReferenceRecord model.

Reference lists the transform joins against: national red lists (threat
category), the invasive species list and the conservation unit catalogue.
Rows are loaded wholesale per `source`; the payload keeps the list's own
column names.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import CheckConstraint, DateTime, Index, Text
from sqlalchemy.orm import Mapped, mapped_column, validates

from app.core.base import Base, DocumentMixin, JSONDocument, ensure_utc


REFERENCE_KINDS = ("threat", "invasive", "conservation_unit")


class ReferenceRecord(DocumentMixin, Base):
    __tablename__ = "reference_records"

    kind: Mapped[str] = mapped_column(Text, nullable=False)
    # e.g. plantaeAmeacada, faunaAmeacada, invasoras, catalogoucs
    source: Mapped[str] = mapped_column(Text, nullable=False)
    fields: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    loaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "kind IN ('threat', 'invasive', 'conservation_unit')",
            name="ck_reference_records_kind",
        ),
        Index("ix_reference_records_kind_source", "kind", "source"),
    )

    @validates("loaded_at")
    def _validate_utc(self, key: str, value: datetime) -> datetime:
        return ensure_utc(key, value)
