from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column, validates

from app.core.base import Base, DocumentMixin, ensure_utc


class ResourceState(DocumentMixin, Base):
    """Persisted version state of one provider resource (id = resource_id).

    The version check writes `last_checked_at` and `last_modified`; only a
    successful, non-dry ingestion advances `last_known_version`.
    """

    __tablename__ = "resource_states"

    last_known_version: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_modified: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_ingested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @validates("last_checked_at", "last_ingested_at")
    def _validate_utc(self, key: str, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(key, value)
