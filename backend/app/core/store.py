"""Document store over SQLAlchemy.

Exposes four operations (upsert-by-id, delete-by-id, find-by-filter,
count-by-filter) over the logical collections below. The store is an explicit
handle: callers build it from settings, `open()` it, pass it into each
component and `close()` it when the run ends.

Filters are plain mappings of column -> value. A list/tuple/set value means
IN, None means IS NULL. Results are ordered by id so callers can page with
`after_id` (keyset pagination).
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.base import Base
from app.core.config import DATABASE_URL_ENV, PipelineSettings
from app.core.errors import ConfigurationError, StorageError
from app.models import CanonicalRecord, RawRecord, ReferenceRecord, ResourceState, RunOutcome


logger = logging.getLogger(__name__)


class Collection(str, Enum):
    RAW = "raw_records"
    CANONICAL = "canonical_records"
    RUN_OUTCOMES = "run_outcomes"
    RESOURCE_STATES = "resource_states"
    REFERENCE = "reference_records"


_MODELS = {
    Collection.RAW: RawRecord,
    Collection.CANONICAL: CanonicalRecord,
    Collection.RUN_OUTCOMES: RunOutcome,
    Collection.RESOURCE_STATES: ResourceState,
    Collection.REFERENCE: ReferenceRecord,
}

_SYSTEMIC_ERRORS = (OperationalError, InterfaceError, DisconnectionError)
_DELETE_CHUNK = 500


def _storage_error(action: str, collection: Collection, ex: SQLAlchemyError) -> StorageError:
    systemic = isinstance(ex, _SYSTEMIC_ERRORS)
    return StorageError(f"{action} on {collection.value} failed: {type(ex).__name__}", systemic=systemic)


class DocumentStore:
    def __init__(self, database_url: Optional[str], *, echo: bool = False) -> None:
        self._database_url = database_url
        self._echo = echo
        self._engine: Optional[Engine] = None
        self._sessions: Optional[sessionmaker[Session]] = None

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "DocumentStore":
        return cls(settings.database_url)

    # ------------------------------------------------------------------ lifecycle

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def open(self) -> "DocumentStore":
        if self._engine is not None:
            return self
        if not self._database_url or not self._database_url.strip():
            raise ConfigurationError(
                f"Missing required setting {DATABASE_URL_ENV}; the document store cannot be opened.",
                setting=DATABASE_URL_ENV,
            )
        url = self._database_url.strip()
        kwargs: dict[str, Any] = {"future": True, "echo": self._echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True
        self._engine = create_engine(url, **kwargs)
        self._sessions = sessionmaker(bind=self._engine, class_=Session, autoflush=False, expire_on_commit=False)
        logger.debug("document store opened (%s)", self._engine.url.render_as_string(hide_password=True))
        return self

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._sessions = None

    def __enter__(self) -> "DocumentStore":
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def create_schema(self) -> None:
        """Create all tables (tests and local runs; production uses Alembic)."""
        Base.metadata.create_all(self._require_engine())

    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise ConfigurationError("Document store is not open; call open() before running.")
        return self._engine

    def _session(self) -> Session:
        self._require_engine()
        assert self._sessions is not None
        return self._sessions()

    # ------------------------------------------------------------------ operations

    def upsert(self, collection: Collection, doc_id: str, fields: Mapping[str, Any]) -> bool:
        """Insert or overwrite the document `doc_id`. Returns True when it was created."""
        model = _MODELS[collection]
        session = self._session()
        try:
            with session.begin():
                row = session.get(model, doc_id)
                created = row is None
                if created:
                    row = model(id=doc_id)
                    session.add(row)
                for key, value in fields.items():
                    if key == "id":
                        continue
                    setattr(row, key, value)
            return created
        except SQLAlchemyError as ex:
            raise _storage_error("upsert", collection, ex) from ex
        finally:
            session.close()

    def insert(self, collection: Collection, doc_id: str, fields: Mapping[str, Any]) -> None:
        """Insert a new document; an existing id is a StorageError."""
        model = _MODELS[collection]
        session = self._session()
        try:
            with session.begin():
                if session.get(model, doc_id) is not None:
                    raise StorageError(f"{collection.value} already holds a document with id {doc_id}")
                session.add(model(id=doc_id, **{k: v for k, v in fields.items() if k != "id"}))
        except SQLAlchemyError as ex:
            raise _storage_error("insert", collection, ex) from ex
        finally:
            session.close()

    def delete(self, collection: Collection, doc_id: str) -> bool:
        """Delete by id through the ORM (so model listeners apply). Returns True if a row was removed."""
        model = _MODELS[collection]
        session = self._session()
        try:
            with session.begin():
                row = session.get(model, doc_id)
                if row is None:
                    return False
                session.delete(row)
            return True
        except SQLAlchemyError as ex:
            raise _storage_error("delete", collection, ex) from ex
        finally:
            session.close()

    def delete_many(self, collection: Collection, doc_ids: Iterable[str]) -> int:
        if collection is Collection.RUN_OUTCOMES:
            raise StorageError("run outcomes cannot be deleted")
        ids = list(doc_ids)
        if not ids:
            return 0
        model = _MODELS[collection]
        removed = 0
        session = self._session()
        try:
            with session.begin():
                for start in range(0, len(ids), _DELETE_CHUNK):
                    chunk = ids[start : start + _DELETE_CHUNK]
                    result = session.execute(delete(model).where(model.id.in_(chunk)))
                    removed += int(result.rowcount or 0)
            return removed
        except SQLAlchemyError as ex:
            raise _storage_error("delete", collection, ex) from ex
        finally:
            session.close()

    def get(self, collection: Collection, doc_id: str) -> Optional[dict[str, Any]]:
        docs = self.find(collection, {"id": doc_id}, limit=1)
        return docs[0] if docs else None

    def find(
        self,
        collection: Collection,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        limit: Optional[int] = None,
        after_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        model = _MODELS[collection]
        stmt = select(model).where(*self._conditions(model, filters)).order_by(model.id)
        if after_id is not None:
            stmt = stmt.where(model.id > after_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        session = self._session()
        try:
            rows = session.execute(stmt).scalars().all()
            return [row.to_document() for row in rows]
        except SQLAlchemyError as ex:
            raise _storage_error("find", collection, ex) from ex
        finally:
            session.close()

    def find_ids(
        self,
        collection: Collection,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        limit: Optional[int] = None,
        after_id: Optional[str] = None,
    ) -> list[str]:
        model = _MODELS[collection]
        stmt = select(model.id).where(*self._conditions(model, filters)).order_by(model.id)
        if after_id is not None:
            stmt = stmt.where(model.id > after_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        session = self._session()
        try:
            return list(session.execute(stmt).scalars().all())
        except SQLAlchemyError as ex:
            raise _storage_error("find", collection, ex) from ex
        finally:
            session.close()

    def count(self, collection: Collection, filters: Optional[Mapping[str, Any]] = None) -> int:
        model = _MODELS[collection]
        stmt = select(func.count()).select_from(model).where(*self._conditions(model, filters))
        session = self._session()
        try:
            return int(session.execute(stmt).scalar_one())
        except SQLAlchemyError as ex:
            raise _storage_error("count", collection, ex) from ex
        finally:
            session.close()

    @staticmethod
    def _conditions(model: type, filters: Optional[Mapping[str, Any]]) -> list[Any]:
        conditions = []
        for key, value in (filters or {}).items():
            column = getattr(model, key, None)
            if column is None:
                raise ValueError(f"{model.__tablename__} has no field {key!r}")
            if value is None:
                conditions.append(column.is_(None))
            elif isinstance(value, (list, tuple, set, frozenset)):
                conditions.append(column.in_(list(value)))
            else:
                conditions.append(column == value)
        return conditions
