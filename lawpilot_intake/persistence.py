"""
Persistence Client
==================

Async facade over the record store (SQLAlchemy) and the blob bucket.
Callers work with named collections and plain dict rows:

    rows = await client.select("guest_documents", session_id=sid)
    case = (await client.insert("cases", {...}))[0]
    await client.delete("guest_documents", session_id=sid)
    await client.upload("guests/sid/x.pdf", data, "application/pdf")

Blocking SQLAlchemy/storage calls run in a worker thread so each call is a
single await point for the orchestrator. Database failures surface as
RecordError, blob failures as StorageError.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .db.models import (
    Case, Document, DocumentRequirement, GuestDocument, Profile
)
from .errors import RecordError, StorageError

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

TABLES = {
    "guest_documents": GuestDocument,
    "cases": Case,
    "documents": Document,
    "profiles": Profile,
    "document_requirements": DocumentRequirement,
}


def _enum_value(v):
    return v.value if hasattr(v, "value") else v


def row_to_dict(obj) -> Row:
    return {c.name: _enum_value(getattr(obj, c.name)) for c in obj.__table__.columns}


class PersistenceClient:
    """Records + blobs behind one async client"""

    def __init__(self, session_factory: sessionmaker, storage):
        self._session_factory = session_factory
        self.storage = storage

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def _model(self, table: str):
        try:
            return TABLES[table]
        except KeyError:
            raise RecordError(f"Unknown collection: {table}", table=table)

    @staticmethod
    def _apply_filters(query, model, filters: Dict[str, Any]):
        for column, value in filters.items():
            attr = getattr(model, column)
            if isinstance(value, (list, tuple, set)):
                query = query.filter(attr.in_(list(value)))
            else:
                query = query.filter(attr == value)
        return query

    def _run(self, table: str, op, *args):
        session: Session = self._session_factory()
        try:
            result = op(session, *args)
            session.commit()
            return result
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Record operation on {table} failed: {e}")
            raise RecordError(str(e), table=table) from e
        finally:
            session.close()

    async def select(self, table: str, order_by: Optional[str] = None, **filters) -> List[Row]:
        model = self._model(table)

        def op(session: Session):
            query = self._apply_filters(session.query(model), model, filters)
            if order_by:
                query = query.order_by(getattr(model, order_by))
            return [row_to_dict(obj) for obj in query.all()]

        return await asyncio.to_thread(self._run, table, op)

    async def insert(self, table: str, rows: Union[Row, Iterable[Row]]) -> List[Row]:
        """Insert one or many rows; returns them with generated columns filled."""
        model = self._model(table)
        payload = [rows] if isinstance(rows, dict) else list(rows)

        def op(session: Session):
            objs = [model(**row) for row in payload]
            session.add_all(objs)
            session.flush()
            return [row_to_dict(obj) for obj in objs]

        return await asyncio.to_thread(self._run, table, op)

    async def upsert(self, table: str, row: Row) -> Row:
        """Insert or update by primary key `id`."""
        model = self._model(table)

        def op(session: Session):
            obj = session.get(model, row["id"])
            if obj is None:
                obj = model(**row)
                session.add(obj)
            else:
                for column, value in row.items():
                    setattr(obj, column, value)
            session.flush()
            return row_to_dict(obj)

        return await asyncio.to_thread(self._run, table, op)

    async def update(self, table: str, values: Row, **filters) -> int:
        if not filters:
            raise ValueError("update requires at least one filter")
        model = self._model(table)

        def op(session: Session):
            objs = self._apply_filters(session.query(model), model, filters).all()
            for obj in objs:
                for column, value in values.items():
                    setattr(obj, column, value)
            return len(objs)

        return await asyncio.to_thread(self._run, table, op)

    async def delete(self, table: str, **filters) -> int:
        if not filters:
            raise ValueError("delete requires at least one filter")
        model = self._model(table)

        def op(session: Session):
            objs = self._apply_filters(session.query(model), model, filters).all()
            for obj in objs:
                session.delete(obj)
            return len(objs)

        return await asyncio.to_thread(self._run, table, op)

    # -------------------------------------------------------------------------
    # Blobs
    # -------------------------------------------------------------------------

    def _blob(self, path: str, op, *args):
        try:
            return op(*args)
        except StorageError:
            raise
        except OSError as e:
            logger.error(f"Storage operation on {path} failed: {e}")
            raise StorageError(str(e), path=path) from e

    async def upload(self, path: str, data: bytes, content_type: Optional[str] = None, upsert: bool = False):
        return await asyncio.to_thread(self._blob, path, self.storage.put, path, data, content_type, upsert)

    async def download(self, path: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._blob, path, self.storage.get, path)

    async def create_signed_url(self, path: str, expires_in: int) -> str:
        return await asyncio.to_thread(self._blob, path, self.storage.signed_url, path, expires_in)

    async def remove(self, paths: Iterable[str]) -> int:
        removed = 0
        for path in paths:
            if await asyncio.to_thread(self._blob, path, self.storage.delete, path):
                removed += 1
        return removed


_client: Optional[PersistenceClient] = None


def get_persistence() -> PersistenceClient:
    """Client bound to the configured database and storage backend."""
    global _client
    if _client is None:
        from .db.session import SessionLocal, get_engine
        from .storage import get_storage

        get_engine()
        _client = PersistenceClient(SessionLocal, get_storage())
    return _client


def reset_persistence():
    global _client
    _client = None
