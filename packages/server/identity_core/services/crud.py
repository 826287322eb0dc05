"""
Tenant-scoped CRUD engine.

``MembershipBoundedCrudService`` is the generic document pipeline every
resource service (roles, user types, users) builds on:

- every operation resolves the membership first
- every read ANDs the tenant clause into the caller's filter
- managed fields are stripped from caller payloads and hidden fields from results
- updates merge the payload onto a copy of the current document
- validation runs before the write, the event after it, then the
  post-mutation hooks, all before the call returns

Subclasses customise the pipeline through the ``_prepare_*``, ``_validate``,
``_is_already_exist``, ``_unique_keys``, ``_before_persist`` and
``_to_result`` hooks.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence

import structlog

from identity_core.core.documents import clone, merge, without
from identity_core.core.events import EventEmitter
from identity_core.core.exceptions import AlreadyExistsError, FieldError, NotFoundError
from identity_core.services.memberships import MembershipService
from identity_core.store.base import (
    ID_FIELD,
    DocumentStore,
    DuplicateKeyError,
    Filter,
    Sort,
    UniqueKey,
    and_,
    eq,
    object_id,
    text,
)
from identity_shared.schemas.common import BulkDeleteResult, Page
from identity_shared.schemas.events import AuthEvent, EventType
from identity_shared.schemas.identity import HumanUtilizer, SystemUtilizer
from identity_shared.schemas.memberships import Membership

log = structlog.get_logger()

AnyUtilizer = HumanUtilizer | SystemUtilizer
PostMutationHook = Callable[[AuthEvent], Awaitable[None]]

MEMBERSHIP_FIELD = "membership_id"
SYS_FIELD = "sys"


async def run_to_completion(coro: Awaitable[Any]) -> Any:
    """Run ``coro`` so that cancelling the caller cannot interrupt it halfway.

    A cancellation that arrives while the write is in flight is re-raised
    only after the write (and its event) has finished.
    """
    task = asyncio.ensure_future(coro)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        if not task.done():
            await task
        raise


class MembershipBoundedCrudService:
    collection: str = ""
    resource_name: str = "Document"
    log_name: str = "document"
    search_fields: tuple[str, ...] = ()
    managed_fields: tuple[str, ...] = (ID_FIELD, MEMBERSHIP_FIELD, SYS_FIELD)
    hidden_fields: tuple[str, ...] = ()

    created_event: Optional[EventType] = None
    updated_event: Optional[EventType] = None
    deleted_event: Optional[EventType] = None

    def __init__(
        self,
        store: DocumentStore,
        memberships: MembershipService,
        emitter: Optional[EventEmitter] = None,
    ):
        self._store = store
        self._memberships = memberships
        self._emitter = emitter
        self._hooks: list[PostMutationHook] = []

    def add_post_mutation_hook(self, hook: PostMutationHook) -> None:
        """Register a callback run, in registration order, after every successful mutation."""
        self._hooks.append(hook)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def _tenant_filter(self, membership_id: str, filter_: Optional[Filter] = None) -> Filter:
        return and_(eq(MEMBERSHIP_FIELD, membership_id), filter_)

    async def _find_raw(self, membership_id: str, document_id: str) -> Optional[dict]:
        return await self._store.find_one(
            self.collection, self._tenant_filter(membership_id, object_id(document_id))
        )

    def _present(self, document: dict) -> dict:
        return without(document, *self.hidden_fields)

    def _to_result(self, document: dict) -> Any:
        return document

    def _not_found(self, document_id: str) -> NotFoundError:
        return NotFoundError(self.resource_name, document_id)

    async def get(self, membership_id: str, document_id: str) -> Optional[Any]:
        await self._memberships.require(membership_id)
        document = await self._find_raw(membership_id, document_id)
        if document is None:
            return None
        return self._to_result(self._present(document))

    async def query(
        self,
        membership_id: str,
        filter_: Optional[Filter] = None,
        *,
        skip: Optional[int] = None,
        limit: Optional[int] = None,
        with_count: bool = False,
        sort: Optional[Sort] = None,
        fields: Optional[Sequence[str]] = None,
    ) -> Page:
        await self._memberships.require(membership_id)
        result = await self._store.find(
            self.collection,
            self._tenant_filter(membership_id, filter_),
            skip=skip,
            limit=limit,
            with_count=with_count,
            sort=sort,
            fields=fields,
        )
        items = [self._present(d) for d in result.items]
        if not fields:
            items = [self._to_result(d) for d in items]
        return Page(items=items, count=result.count)

    async def get_all(
        self,
        membership_id: str,
        *,
        skip: Optional[int] = None,
        limit: Optional[int] = None,
        with_count: bool = False,
        sort: Optional[Sort] = None,
    ) -> Page:
        return await self.query(
            membership_id, skip=skip, limit=limit, with_count=with_count, sort=sort
        )

    async def search(
        self,
        membership_id: str,
        keyword: str,
        *,
        skip: Optional[int] = None,
        limit: Optional[int] = None,
        with_count: bool = False,
        sort: Optional[Sort] = None,
    ) -> Page:
        return await self.query(
            membership_id,
            text(keyword, self.search_fields),
            skip=skip,
            limit=limit,
            with_count=with_count,
            sort=sort,
        )

    async def count(self, membership_id: str, filter_: Optional[Filter] = None) -> int:
        await self._memberships.require(membership_id)
        return await self._store.count(self.collection, self._tenant_filter(membership_id, filter_))

    # -----------------------------------------------------------------------
    # Pipeline hooks
    # -----------------------------------------------------------------------

    def _strip_managed(self, payload: dict) -> dict:
        return clone(without(payload, *self.managed_fields))

    async def _prepare_create(
        self, utilizer: AnyUtilizer, membership: Membership, document: dict, payload: dict
    ) -> dict:
        return document

    async def _prepare_update(
        self,
        utilizer: AnyUtilizer,
        membership: Membership,
        current: dict,
        patch: dict,
        payload: dict,
    ) -> dict:
        return patch

    def _merge(self, current: dict, patch: dict) -> dict:
        merged = merge(current, patch)
        merged.pop(ID_FIELD, None)
        return merged

    def _stamp_sys(self, document: dict, utilizer: AnyUtilizer, current: Optional[dict]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        sys = dict((current or {}).get(SYS_FIELD) or {})
        if current is None:
            sys["created_at"] = now
            sys["created_by"] = utilizer.display_name
        else:
            sys["modified_at"] = now
            sys["modified_by"] = utilizer.display_name
        document[SYS_FIELD] = sys

    async def _validate(
        self,
        utilizer: AnyUtilizer,
        membership: Membership,
        document: dict,
        current: Optional[dict],
    ) -> None:
        """Raise a ``ValidationFailedError`` (or subclass) when ``document`` is invalid."""

    async def _is_already_exist(
        self, membership: Membership, document: dict, current: Optional[dict]
    ) -> bool:
        return False

    def _already_exists_error(
        self, document: dict, keys: Sequence[UniqueKey] = ()
    ) -> AlreadyExistsError:
        errors = [FieldError(k.path, f"'{k.path}' must be unique", code="not_unique") for k in keys]
        return AlreadyExistsError(f"{self.resource_name} already exists", errors=errors)

    async def _unique_keys(self, membership: Membership, document: dict) -> Sequence[UniqueKey]:
        return ()

    async def _before_persist(
        self,
        utilizer: AnyUtilizer,
        membership: Membership,
        document: dict,
        current: Optional[dict],
        payload: dict,
    ) -> None:
        pass

    # -----------------------------------------------------------------------
    # Events
    # -----------------------------------------------------------------------

    async def _emit(
        self,
        event_type: Optional[EventType],
        utilizer: AnyUtilizer,
        membership_id: str,
        document: Optional[dict],
        prior: Optional[dict] = None,
    ) -> None:
        if event_type is None:
            return
        event = AuthEvent(
            membership_id=membership_id,
            event_type=event_type,
            utilizer_id=utilizer.id,
            document=document,
            prior=prior,
        )
        if self._emitter is not None:
            await self._emitter.fire(event)
        for hook in self._hooks:
            await hook(event)

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    async def create(self, utilizer: AnyUtilizer, membership_id: str, payload: dict) -> Any:
        membership = await self._memberships.require(membership_id)
        document = self._strip_managed(payload)
        document = await self._prepare_create(utilizer, membership, document, payload)
        document[MEMBERSHIP_FIELD] = membership_id
        self._stamp_sys(document, utilizer, None)

        await self._validate(utilizer, membership, document, None)
        if await self._is_already_exist(membership, document, None):
            raise self._already_exists_error(document)
        unique_keys = await self._unique_keys(membership, document)
        await self._before_persist(utilizer, membership, document, None, payload)

        async def persist() -> dict:
            try:
                document_id = await self._store.insert(self.collection, document, unique_keys)
            except DuplicateKeyError as exc:
                log.info(f"{self.log_name}.duplicate", membership_id=membership_id, keys=[k.path for k in exc.keys])
                raise self._already_exists_error(document, exc.keys) from exc
            stored = {ID_FIELD: document_id, **without(document, ID_FIELD)}
            presented = self._present(stored)
            await self._emit(self.created_event, utilizer, membership_id, presented)
            return presented

        presented = await run_to_completion(persist())
        log.info(f"{self.log_name}.created", membership_id=membership_id, id=presented[ID_FIELD], utilizer=utilizer.id)
        return self._to_result(presented)

    async def update(
        self, utilizer: AnyUtilizer, membership_id: str, document_id: str, payload: dict
    ) -> Any:
        membership = await self._memberships.require(membership_id)
        current = await self._find_raw(membership_id, document_id)
        if current is None:
            raise self._not_found(document_id)

        patch = self._strip_managed(payload)
        patch = await self._prepare_update(utilizer, membership, current, patch, payload)
        document = self._merge(current, patch)
        document[MEMBERSHIP_FIELD] = membership_id
        self._stamp_sys(document, utilizer, current)

        await self._validate(utilizer, membership, document, current)
        if await self._is_already_exist(membership, document, current):
            raise self._already_exists_error(document)
        unique_keys = await self._unique_keys(membership, document)
        await self._before_persist(utilizer, membership, document, current, payload)

        async def persist() -> dict:
            try:
                replaced = await self._store.replace(self.collection, document_id, document, unique_keys)
            except DuplicateKeyError as exc:
                log.info(f"{self.log_name}.duplicate", membership_id=membership_id, keys=[k.path for k in exc.keys])
                raise self._already_exists_error(document, exc.keys) from exc
            if not replaced:
                raise self._not_found(document_id)
            presented = self._present({ID_FIELD: document_id, **document})
            await self._emit(
                self.updated_event, utilizer, membership_id, presented, prior=self._present(current)
            )
            return presented

        presented = await run_to_completion(persist())
        log.info(f"{self.log_name}.updated", membership_id=membership_id, id=document_id, utilizer=utilizer.id)
        return self._to_result(presented)

    async def _delete_in_membership(
        self, utilizer: AnyUtilizer, membership_id: str, document_id: str
    ) -> bool:
        current = await self._find_raw(membership_id, document_id)
        if current is None:
            raise self._not_found(document_id)

        async def persist() -> bool:
            deleted = await self._store.delete(self.collection, document_id)
            if deleted:
                await self._emit(
                    self.deleted_event, utilizer, membership_id, None, prior=self._present(current)
                )
            return deleted

        deleted = await run_to_completion(persist())
        if deleted:
            log.info(f"{self.log_name}.deleted", membership_id=membership_id, id=document_id, utilizer=utilizer.id)
        return deleted

    async def delete(self, utilizer: AnyUtilizer, membership_id: str, document_id: str) -> bool:
        await self._memberships.require(membership_id)
        return await self._delete_in_membership(utilizer, membership_id, document_id)

    async def bulk_delete(
        self, utilizer: AnyUtilizer, membership_id: str, document_ids: Sequence[str]
    ) -> BulkDeleteResult:
        await self._memberships.require(membership_id)
        result = BulkDeleteResult()
        for document_id in document_ids:
            try:
                deleted = await self._delete_in_membership(utilizer, membership_id, document_id)
            except NotFoundError:
                deleted = False
            if deleted:
                result.succeeded_ids.append(document_id)
            else:
                result.failed_ids.append(document_id)
        log.info(
            f"{self.log_name}.bulk_deleted",
            membership_id=membership_id,
            outcome=result.outcome.value,
            failed=len(result.failed_ids),
        )
        return result
