"""
Read-only membership lookups.

Memberships are administered outside the core; every tenant-scoped operation
resolves its membership here first and fails with ``MembershipNotFoundError``
when it does not exist.
"""

from __future__ import annotations

from typing import Optional

import structlog

from identity_core.core.config import Settings, get_settings
from identity_core.core.exceptions import MembershipNotFoundError
from identity_core.store.base import DocumentStore, and_, object_id
from identity_shared.schemas.memberships import Membership

log = structlog.get_logger()

MEMBERSHIPS_COLLECTION = "memberships"


class MembershipService:
    collection = MEMBERSHIPS_COLLECTION

    def __init__(self, store: DocumentStore, settings: Optional[Settings] = None):
        self._store = store
        self._settings = settings or get_settings()

    async def get(self, membership_id: str) -> Optional[Membership]:
        if not membership_id:
            return None
        document = await self._store.find_one(self.collection, object_id(membership_id))
        if document is None:
            return None
        document.setdefault("hash_algorithm", self._settings.default_hash_algorithm)
        return Membership.model_validate(document)

    async def require(self, membership_id: str) -> Membership:
        membership = await self.get(membership_id)
        if membership is None:
            log.info("membership.not_found", membership_id=membership_id)
            raise MembershipNotFoundError(membership_id)
        return membership

    async def get_all(self) -> list[Membership]:
        result = await self._store.find(self.collection, and_())
        for document in result.items:
            document.setdefault("hash_algorithm", self._settings.default_hash_algorithm)
        return [Membership.model_validate(d) for d in result.items]
