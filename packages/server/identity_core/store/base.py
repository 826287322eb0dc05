"""
Document store contract.

The core never talks to a database directly: it builds filters with the
small DSL below and hands them to a ``DocumentStore``. Adapters must enforce
the declared unique keys atomically and raise ``DuplicateKeyError`` when an
insert or replace would violate one.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence, Union

from identity_core.core.documents import MISSING, get_value, is_scalar, set_value
from identity_shared.schemas.common import SortDirection

ID_FIELD = "_id"


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Eq:
    path: str
    value: Any


@dataclass(frozen=True)
class Range:
    path: str
    gt: Any = None
    gte: Any = None
    lt: Any = None
    lte: Any = None


@dataclass(frozen=True)
class And:
    clauses: tuple["Filter", ...]


@dataclass(frozen=True)
class Or:
    clauses: tuple["Filter", ...]


@dataclass(frozen=True)
class Text:
    keyword: str
    paths: tuple[str, ...]


Filter = Union[Eq, Range, And, Or, Text]


def eq(path: str, value: Any) -> Eq:
    return Eq(path, value)


def and_(*clauses: Optional[Filter]) -> And:
    return And(tuple(c for c in clauses if c is not None))


def or_(*clauses: Optional[Filter]) -> Or:
    return Or(tuple(c for c in clauses if c is not None))


def range_(path: str, *, gt: Any = None, gte: Any = None, lt: Any = None, lte: Any = None) -> Range:
    return Range(path, gt=gt, gte=gte, lt=lt, lte=lte)


def text(keyword: str, paths: Sequence[str]) -> Text:
    return Text(keyword, tuple(paths))


def object_id(document_id: str) -> Eq:
    return Eq(ID_FIELD, document_id)


@dataclass(frozen=True)
class Sort:
    path: str
    direction: SortDirection = SortDirection.ASC


@dataclass
class FindResult:
    items: list[dict]
    count: Optional[int] = None


@dataclass(frozen=True)
class UniqueKey:
    """One unique value of a document: ``value`` must be unique per (scope, path)."""
    scope: str
    path: str
    value: Any

    @property
    def canonical_value(self) -> str:
        return json.dumps(self.value, sort_keys=True, default=str)


class DuplicateKeyError(Exception):
    def __init__(self, collection: str, keys: Sequence[UniqueKey]):
        self.collection = collection
        self.keys = list(keys)
        paths = ", ".join(k.path for k in self.keys)
        super().__init__(f"Duplicate key in '{collection}' ({paths})")


class DocumentStore(Protocol):
    async def find_one(self, collection: str, filter_: Filter) -> Optional[dict]: ...

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
    ) -> FindResult: ...

    async def insert(
        self, collection: str, document: dict, unique_keys: Sequence[UniqueKey] = ()
    ) -> str: ...

    async def replace(
        self,
        collection: str,
        document_id: str,
        document: dict,
        unique_keys: Sequence[UniqueKey] = (),
    ) -> bool: ...

    async def delete(self, collection: str, document_id: str) -> bool: ...

    async def count(self, collection: str, filter_: Filter) -> int: ...


# ---------------------------------------------------------------------------
# In-process evaluation, shared by the adapters
# ---------------------------------------------------------------------------

def _compare(value: Any, bound: Any, op: str) -> bool:
    if value is None or isinstance(value, (dict, list)):
        return False
    try:
        if op == "gt":
            return value > bound
        if op == "gte":
            return value >= bound
        if op == "lt":
            return value < bound
        return value <= bound
    except TypeError:
        return False


def evaluate(filter_: Filter, document: dict) -> bool:
    if isinstance(filter_, Eq):
        value = get_value(document, filter_.path, MISSING)
        if value is MISSING:
            return filter_.value is None
        return value == filter_.value
    if isinstance(filter_, Range):
        value = get_value(document, filter_.path, MISSING)
        if value is MISSING:
            return False
        bounds = {"gt": filter_.gt, "gte": filter_.gte, "lt": filter_.lt, "lte": filter_.lte}
        return all(_compare(value, b, op) for op, b in bounds.items() if b is not None)
    if isinstance(filter_, And):
        return all(evaluate(c, document) for c in filter_.clauses)
    if isinstance(filter_, Or):
        return any(evaluate(c, document) for c in filter_.clauses)
    if isinstance(filter_, Text):
        keyword = filter_.keyword.strip().lower()
        if not keyword:
            return True
        for path in filter_.paths:
            value = get_value(document, path)
            if isinstance(value, str) and keyword in value.lower():
                return True
        return False
    raise TypeError(f"Unsupported filter: {filter_!r}")


def project(document: dict, fields: Optional[Sequence[str]]) -> dict:
    """Keep only ``fields`` (dotted paths) plus the id."""
    if not fields:
        return document
    projected: dict = {}
    if ID_FIELD in document:
        projected[ID_FIELD] = document[ID_FIELD]
    for path in fields:
        value = get_value(document, path, MISSING)
        if value is not MISSING:
            set_value(projected, path, copy.deepcopy(value))
    return projected


def sort_key(sort: Sort):
    def key(document: dict):
        value = get_value(document, sort.path)
        if not is_scalar(value):
            value = json.dumps(value, sort_keys=True, default=str)
        # None sorts first; values of different types are grouped by type
        return (value is not None, type(value).__name__, value if value is not None else "")
    return key
