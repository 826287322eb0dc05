"""
In-memory document store.

Used by tests and by embedders that do not need durability. All writes take
one ``asyncio.Lock`` so the unique-key check and the write are atomic.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from typing import Optional, Sequence

import structlog

from identity_core.store.base import (
    ID_FIELD,
    DuplicateKeyError,
    Filter,
    FindResult,
    Sort,
    UniqueKey,
    evaluate,
    project,
    sort_key,
)
from identity_shared.schemas.common import SortDirection

log = structlog.get_logger()

_IndexKey = tuple[str, str, str, str]


class MemoryDocumentStore:
    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict]] = {}
        self._unique_index: dict[_IndexKey, str] = {}
        self._keys_by_document: dict[tuple[str, str], list[_IndexKey]] = {}
        self._lock = asyncio.Lock()

    def _collection(self, name: str) -> dict[str, dict]:
        return self._collections.setdefault(name, {})

    @staticmethod
    def _index_keys(collection: str, unique_keys: Sequence[UniqueKey]) -> list[_IndexKey]:
        return [(collection, k.scope, k.path, k.canonical_value) for k in unique_keys]

    def _check_unique(
        self, collection: str, document_id: str, unique_keys: Sequence[UniqueKey]
    ) -> list[_IndexKey]:
        index_keys = self._index_keys(collection, unique_keys)
        taken = [
            key for key, index_key in zip(unique_keys, index_keys)
            if self._unique_index.get(index_key, document_id) != document_id
        ]
        if taken:
            raise DuplicateKeyError(collection, taken)
        return index_keys

    def _release_keys(self, collection: str, document_id: str) -> None:
        for index_key in self._keys_by_document.pop((collection, document_id), []):
            self._unique_index.pop(index_key, None)

    def _claim_keys(self, collection: str, document_id: str, index_keys: list[_IndexKey]) -> None:
        for index_key in index_keys:
            self._unique_index[index_key] = document_id
        self._keys_by_document[(collection, document_id)] = index_keys

    # -- reads -------------------------------------------------------------

    async def find_one(self, collection: str, filter_: Filter) -> Optional[dict]:
        for document in self._collection(collection).values():
            if evaluate(filter_, document):
                return copy.deepcopy(document)
        return None

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
        matched = [d for d in self._collection(collection).values() if evaluate(filter_, d)]
        if sort is not None:
            matched.sort(key=sort_key(sort), reverse=sort.direction == SortDirection.DESC)
        total = len(matched) if with_count else None
        start = skip or 0
        end = start + limit if limit is not None else None
        items = [project(copy.deepcopy(d), fields) for d in matched[start:end]]
        return FindResult(items=items, count=total)

    async def count(self, collection: str, filter_: Filter) -> int:
        return sum(1 for d in self._collection(collection).values() if evaluate(filter_, d))

    # -- writes ------------------------------------------------------------

    async def insert(
        self, collection: str, document: dict, unique_keys: Sequence[UniqueKey] = ()
    ) -> str:
        async with self._lock:
            document_id = document.get(ID_FIELD) or uuid.uuid4().hex
            documents = self._collection(collection)
            if document_id in documents:
                raise DuplicateKeyError(collection, [UniqueKey("*", ID_FIELD, document_id)])
            index_keys = self._check_unique(collection, document_id, unique_keys)
            stored = copy.deepcopy(document)
            stored[ID_FIELD] = document_id
            documents[document_id] = stored
            self._claim_keys(collection, document_id, index_keys)
        log.debug("store.inserted", collection=collection, document_id=document_id)
        return document_id

    async def replace(
        self,
        collection: str,
        document_id: str,
        document: dict,
        unique_keys: Sequence[UniqueKey] = (),
    ) -> bool:
        async with self._lock:
            documents = self._collection(collection)
            if document_id not in documents:
                return False
            index_keys = self._check_unique(collection, document_id, unique_keys)
            stored = copy.deepcopy(document)
            stored[ID_FIELD] = document_id
            documents[document_id] = stored
            self._release_keys(collection, document_id)
            self._claim_keys(collection, document_id, index_keys)
        return True

    async def delete(self, collection: str, document_id: str) -> bool:
        async with self._lock:
            removed = self._collection(collection).pop(document_id, None)
            if removed is None:
                return False
            self._release_keys(collection, document_id)
        return True
