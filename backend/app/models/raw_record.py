"""RawRecord model (raw staging).

One row per natural entity per resource. The primary key is the assigned id,
so re-fetching the same entity overwrites the row instead of duplicating it.
Rows are deleted only by reconciliation when the entity disappears from a
later full snapshot.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Index, Text
from sqlalchemy.orm import Mapped, mapped_column, validates

from app.core.base import Base, DocumentMixin, JSONDocument, ensure_utc


class RawRecord(DocumentMixin, Base):
    __tablename__ = "raw_records"

    resource_id: Mapped[str] = mapped_column(Text, nullable=False)
    kingdom: Mapped[str] = mapped_column(Text, nullable=False)
    # taxon | occurrence
    record_type: Mapped[str] = mapped_column(Text, nullable=False)

    raw_fields: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)

    ipt_version: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_raw_records_resource_kingdom", "resource_id", "kingdom"),
    )

    @validates("fetched_at")
    def _validate_utc(self, key: str, value: datetime) -> datetime:
        return ensure_utc(key, value)
