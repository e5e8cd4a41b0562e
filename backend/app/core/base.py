"""SQLAlchemy declarative base and shared column helpers.

- Documents keep their payload in JSON columns (JSONB on PostgreSQL) so the
  Darwin Core field set can grow without schema changes.
- Timestamps are timezone-aware and normalized to UTC.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import JSON, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


UTC = timezone.utc

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


def ensure_utc(key: str, value: datetime | None) -> datetime | None:
    """Reject naive or non-UTC datetimes; return the value normalized to UTC."""
    if value is None:
        return None
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{key} must be timezone-aware (UTC).")
    if value.utcoffset() != timedelta(0):
        raise ValueError(f"{key} must be UTC (offset 0).")
    return value.astimezone(UTC)


class DocumentMixin:
    """String-keyed document row (the assigned id is the primary key)."""

    id: Mapped[str] = mapped_column(String, primary_key=True)

    def to_document(self) -> dict:
        return {c.key: getattr(self, c.key) for c in self.__table__.columns}  # type: ignore[attr-defined]

