"""
SQL document store on SQLAlchemy async sessions.

Filters compile to JSON path expressions on the ``documents.body`` column,
which SQLAlchemy renders as ``JSON_EXTRACT`` on SQLite and ``->>``/``#>>`` on
PostgreSQL. Unique keys are rows of ``unique_keys`` written in the same
transaction as the document; an ``IntegrityError`` from that table is
reported as ``DuplicateKeyError``.

Limitations: equality is scalar only, and sorting compares the string form
of the sort path.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import and_ as sa_and
from sqlalchemy import delete as sa_delete
from sqlalchemy import false, func, true
from sqlalchemy import or_ as sa_or
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from identity_core.core.documents import is_scalar, split_path
from identity_core.models.document import DocumentRecord, UniqueKeyRecord
from identity_core.store.base import (
    ID_FIELD,
    And,
    DuplicateKeyError,
    Eq,
    Filter,
    FindResult,
    Or,
    Range,
    Sort,
    Text,
    UniqueKey,
    project,
)
from identity_shared.schemas.common import SortDirection

log = structlog.get_logger()


def _json_path(path: str):
    return DocumentRecord.body[tuple(split_path(path))]


def _typed(path: str, sample: Any):
    expr = _json_path(path)
    if isinstance(sample, bool):
        return expr.as_boolean()
    if isinstance(sample, int):
        return expr.as_integer()
    if isinstance(sample, float):
        return expr.as_float()
    return expr.as_string()


def compile_filter(filter_: Filter):
    if isinstance(filter_, Eq):
        if not is_scalar(filter_.value):
            raise ValueError(f"Equality on '{filter_.path}' only supports scalar values")
        if filter_.path == ID_FIELD:
            return DocumentRecord.id == filter_.value
        if filter_.value is None:
            return _json_path(filter_.path).as_string().is_(None)
        return _typed(filter_.path, filter_.value) == filter_.value
    if isinstance(filter_, Range):
        bounds = [(op, b) for op, b in (
            ("gt", filter_.gt), ("gte", filter_.gte), ("lt", filter_.lt), ("lte", filter_.lte)
        ) if b is not None]
        if not bounds:
            return true()
        expr = _typed(filter_.path, bounds[0][1])
        clauses = []
        for op, bound in bounds:
            if op == "gt":
                clauses.append(expr > bound)
            elif op == "gte":
                clauses.append(expr >= bound)
            elif op == "lt":
                clauses.append(expr < bound)
            else:
                clauses.append(expr <= bound)
        return sa_and(*clauses)
    if isinstance(filter_, And):
        if not filter_.clauses:
            return true()
        return sa_and(*(compile_filter(c) for c in filter_.clauses))
    if isinstance(filter_, Or):
        if not filter_.clauses:
            return false()
        return sa_or(*(compile_filter(c) for c in filter_.clauses))
    if isinstance(filter_, Text):
        keyword = filter_.keyword.strip()
        if not keyword:
            return true()
        if not filter_.paths:
            return false()
        return sa_or(*(_json_path(p).as_string().ilike(f"%{keyword}%") for p in filter_.paths))
    raise TypeError(f"Unsupported filter: {filter_!r}")


def _to_document(record: DocumentRecord) -> dict:
    document = dict(record.body)
    document[ID_FIELD] = record.id
    return document


class SqlDocumentStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # -- reads -------------------------------------------------------------

    async def find_one(self, collection: str, filter_: Filter) -> Optional[dict]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DocumentRecord)
                .where(DocumentRecord.collection == collection, compile_filter(filter_))
                .limit(1)
            )
            record = result.scalars().first()
        return _to_document(record) if record else None

    async def find(
        self,
        collection: str,
        filter_: Filter,
        *,
        skip: Optional[int] = None,
        limit: Optional[int] = None,
        with_count: bool = False,
        sort: Optional[Sort] = None,
        fields: Optional[Sequence[str]] = None,
    ) -> FindResult:
        where = (DocumentRecord.collection == collection, compile_filter(filter_))
        stmt = select(DocumentRecord).where(*where)
        if sort is not None:
            order = (
                DocumentRecord.id if sort.path == ID_FIELD else _json_path(sort.path).as_string()
            )
            stmt = stmt.order_by(order.desc() if sort.direction == SortDirection.DESC else order.asc())
        else:
            stmt = stmt.order_by(DocumentRecord.created_at, DocumentRecord.id)
        if skip:
            stmt = stmt.offset(skip)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            items = [project(_to_document(r), fields) for r in result.scalars().all()]
            total = None
            if with_count:
                counted = await session.execute(
                    select(func.count()).select_from(DocumentRecord).where(*where)
                )
                total = counted.scalar_one()
        return FindResult(items=items, count=total)

    async def count(self, collection: str, filter_: Filter) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(DocumentRecord)
                .where(DocumentRecord.collection == collection, compile_filter(filter_))
            )
            return result.scalar_one()

    # -- writes ------------------------------------------------------------

    @staticmethod
    def _key_records(
        collection: str, document_id: str, unique_keys: Sequence[UniqueKey]
    ) -> list[UniqueKeyRecord]:
        return [
            UniqueKeyRecord(
                collection=collection,
                scope=key.scope,
                path=key.path,
                value=key.canonical_value,
                document_id=document_id,
            )
            for key in unique_keys
        ]

    async def insert(
        self, collection: str, document: dict, unique_keys: Sequence[UniqueKey] = ()
    ) -> str:
        document_id = document.get(ID_FIELD) or uuid.uuid4().hex
        body = {k: v for k, v in document.items() if k != ID_FIELD}
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(DocumentRecord(
                        id=document_id,
                        collection=collection,
                        membership_id=body.get("membership_id"),
                        body=body,
                    ))
                    session.add_all(self._key_records(collection, document_id, unique_keys))
        except IntegrityError as exc:
            log.info("store.duplicate_key", collection=collection, error=str(exc.orig))
            raise DuplicateKeyError(collection, unique_keys) from exc
        return document_id

    async def replace(
        self,
        collection: str,
        document_id: str,
        document: dict,
        unique_keys: Sequence[UniqueKey] = (),
    ) -> bool:
        body = {k: v for k, v in document.items() if k != ID_FIELD}
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    record = await session.get(DocumentRecord, document_id)
                    if record is None or record.collection != collection:
                        return False
                    await session.execute(
                        sa_delete(UniqueKeyRecord).where(
                            UniqueKeyRecord.collection == collection,
                            UniqueKeyRecord.document_id == document_id,
                        )
                    )
                    record.body = body
                    record.membership_id = body.get("membership_id")
                    session.add(record)
                    session.add_all(self._key_records(collection, document_id, unique_keys))
        except IntegrityError as exc:
            log.info("store.duplicate_key", collection=collection, error=str(exc.orig))
            raise DuplicateKeyError(collection, unique_keys) from exc
        return True

    async def delete(self, collection: str, document_id: str) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                record = await session.get(DocumentRecord, document_id)
                if record is None or record.collection != collection:
                    return False
                await session.execute(
                    sa_delete(UniqueKeyRecord).where(
                        UniqueKeyRecord.collection == collection,
                        UniqueKeyRecord.document_id == document_id,
                    )
                )
                await session.delete(record)
        return True
