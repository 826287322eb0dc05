"""
Role service and the per-membership role cache.

Reads check the two reserved roles first (``administrator`` and ``server``),
which are synthesized per membership and never read from the cache or the
store. Other reads go to the cache, then to the store on a miss. Only
mutations fill the cache: every create/update/delete refreshes the
membership's entry before returning, so a caller always reads its own write.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

import structlog

from identity_core.core.config import Settings, get_settings
from identity_core.core.documents import slugify, without
from identity_core.core.events import EventEmitter
from identity_core.core.exceptions import (
    AlreadyExistsError,
    FieldError,
    IdenticalDocumentError,
    ImmutableError,
    ReservedNameViolationError,
    RoleNotFoundError,
)
from identity_core.core.permissions import SERVER_PERMISSIONS, Rbac, admin_permissions
from identity_core.services.crud import AnyUtilizer, MembershipBoundedCrudService
from identity_core.services.memberships import MembershipService
from identity_core.services.schema import (
    ValidationContext,
    check_pattern_sets,
    model_errors,
    raise_for_errors,
)
from identity_core.store.base import ID_FIELD, DocumentStore, UniqueKey, and_, eq, or_
from identity_shared.schemas.common import RESERVED_ROLE_SLUGS, ReservedRoles
from identity_shared.schemas.events import AuthEvent, EventType
from identity_shared.schemas.identity import SystemUtilizer, is_system
from identity_shared.schemas.memberships import Membership
from identity_shared.schemas.roles import Role

log = structlog.get_logger()

ROLES_COLLECTION = "roles"


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _CacheEntry:
    roles: tuple[Role, ...]
    expires_at: float


class RoleCache:
    """Per-membership snapshot of all roles with an absolute TTL.

    Writers replace a membership's entry as a whole, so readers see either
    the previous or the new snapshot.
    """

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def replace(self, membership_id: str, roles: Iterable[Role]) -> None:
        entry = _CacheEntry(tuple(roles), self._clock() + self._ttl)
        async with self._lock:
            self._entries.pop(membership_id, None)
            self._entries[membership_id] = entry

    async def invalidate(self, membership_id: str) -> None:
        async with self._lock:
            self._entries.pop(membership_id, None)

    def get_all(self, membership_id: str) -> Optional[tuple[Role, ...]]:
        entry = self._entries.get(membership_id)
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry.roles

    def get_by_id(self, membership_id: str, role_id: str) -> Optional[Role]:
        return next((r for r in self.get_all(membership_id) or () if r.id == role_id), None)

    def get_by_slug(self, membership_id: str, slug: str) -> Optional[Role]:
        return next((r for r in self.get_all(membership_id) or () if r.slug == slug), None)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

def _synthesize_reserved(membership_id: str) -> dict[str, Role]:
    return {
        ReservedRoles.ADMINISTRATOR.value: Role(
            _id=ReservedRoles.ADMINISTRATOR.value,
            membership_id=membership_id,
            name="Administrator",
            slug=ReservedRoles.ADMINISTRATOR.value,
            description="Full access to every resource of the membership",
            permissions=admin_permissions(),
            forbidden=[],
        ),
        ReservedRoles.SERVER.value: Role(
            _id=ReservedRoles.SERVER.value,
            membership_id=membership_id,
            name="Server",
            slug=ReservedRoles.SERVER.value,
            description="System role for password reset and set operations",
            permissions=list(SERVER_PERMISSIONS),
            forbidden=[],
        ),
    }


class RoleService(MembershipBoundedCrudService):
    collection = ROLES_COLLECTION
    resource_name = "Role"
    log_name = "role"
    search_fields = ("name", "slug", "description")

    created_event = EventType.ROLE_CREATED
    updated_event = EventType.ROLE_UPDATED
    deleted_event = EventType.ROLE_DELETED

    def __init__(
        self,
        store: DocumentStore,
        memberships: MembershipService,
        emitter: Optional[EventEmitter] = None,
        settings: Optional[Settings] = None,
        cache: Optional[RoleCache] = None,
    ):
        super().__init__(store, memberships, emitter)
        settings = settings or get_settings()
        self.cache = cache or RoleCache(settings.role_cache_ttl_seconds)
        self._reserved: dict[str, dict[str, Role]] = {}
        self.add_post_mutation_hook(self._refresh_after_mutation)

    def _to_result(self, document: dict) -> Role:
        return Role.model_validate(document)

    def _not_found(self, document_id: str) -> RoleNotFoundError:
        return RoleNotFoundError(document_id)

    # -- reserved roles --------------------------------------------------------

    def reserved_roles(self, membership_id: str) -> dict[str, Role]:
        table = self._reserved.get(membership_id)
        if table is None:
            table = self._reserved.setdefault(membership_id, _synthesize_reserved(membership_id))
        return table

    def _reserved_role(self, membership_id: str, key: Optional[str]) -> Optional[Role]:
        if key not in RESERVED_ROLE_SLUGS:
            return None
        return self.reserved_roles(membership_id)[key]

    # -- reads -----------------------------------------------------------------

    async def get(self, membership_id: str, role_id: str) -> Optional[Role]:
        await self._memberships.require(membership_id)
        reserved = self._reserved_role(membership_id, role_id)
        if reserved is not None:
            return reserved
        cached = self.cache.get_by_id(membership_id, role_id)
        if cached is not None:
            return cached
        document = await self._find_raw(membership_id, role_id)
        return self._to_result(document) if document else None

    async def get_by_slug(self, membership_id: str, slug: str) -> Optional[Role]:
        await self._memberships.require(membership_id)
        reserved = self._reserved_role(membership_id, slug)
        if reserved is not None:
            return reserved
        cached = self.cache.get_by_slug(membership_id, slug)
        if cached is not None:
            return cached
        document = await self._store.find_one(
            self.collection, self._tenant_filter(membership_id, eq("slug", slug))
        )
        return self._to_result(document) if document else None

    async def get_by_name(self, membership_id: str, name: str) -> Optional[Role]:
        """Look a role up by its name or its slug."""
        await self._memberships.require(membership_id)
        reserved = self._reserved_role(membership_id, slugify(name or ""))
        if reserved is not None:
            return reserved
        cached = next(
            (r for r in self.cache.get_all(membership_id) or () if name in (r.name, r.slug)), None
        )
        if cached is not None:
            return cached
        document = await self._store.find_one(
            self.collection,
            self._tenant_filter(membership_id, or_(eq("name", name), eq("slug", name))),
        )
        return self._to_result(document) if document else None

    # -- cache -----------------------------------------------------------------

    async def refresh_cache(self, membership_id: str) -> tuple[Role, ...]:
        result = await self._store.find(self.collection, self._tenant_filter(membership_id))
        roles = tuple(self._to_result(d) for d in result.items)
        await self.cache.replace(membership_id, roles)
        log.debug("role_cache.refreshed", membership_id=membership_id, roles=len(roles))
        return roles

    async def _refresh_after_mutation(self, event: AuthEvent) -> None:
        await self.refresh_cache(event.membership_id)

    # -- pipeline hooks --------------------------------------------------------

    def _guard_reserved(self, utilizer: AnyUtilizer, slug: Optional[str]) -> None:
        if isinstance(slug, str) and slug in RESERVED_ROLE_SLUGS and not is_system(utilizer):
            log.warning("role.reserved_name_violation", slug=slug, utilizer=utilizer.id)
            raise ReservedNameViolationError(slug)

    async def _prepare_create(
        self, utilizer: AnyUtilizer, membership: Membership, document: dict, payload: dict
    ) -> dict:
        slug = document.get("slug") or document.get("name")
        if isinstance(slug, str):
            document["slug"] = slugify(slug)
        self._guard_reserved(utilizer, document.get("slug"))
        return document

    async def _prepare_update(
        self,
        utilizer: AnyUtilizer,
        membership: Membership,
        current: dict,
        patch: dict,
        payload: dict,
    ) -> dict:
        self._guard_reserved(utilizer, current.get("slug"))
        if "slug" in patch:
            requested = patch["slug"]
            if isinstance(requested, str):
                requested = slugify(requested)
            if requested != current.get("slug"):
                raise ImmutableError([
                    FieldError("slug", "The slug of a role cannot be changed", code="immutable", value=patch["slug"])
                ])
            patch["slug"] = requested
        return patch

    def _merge(self, current: dict, patch: dict) -> dict:
        merged = super()._merge(current, patch)
        if without(merged, "sys") == without(current, ID_FIELD, "sys"):
            raise IdenticalDocumentError()
        return merged

    async def _validate(
        self,
        utilizer: AnyUtilizer,
        membership: Membership,
        document: dict,
        current: Optional[dict],
    ) -> None:
        context = ValidationContext(membership.id, current[ID_FIELD] if current else None, current)
        name = document.get("name")
        if not isinstance(name, str) or not name.strip():
            context.add("name", "name is a required field", code="required")
        if not document.get("membership_id"):
            context.add("membership_id", "membership_id is a required field", code="required")
        if not document.get("slug"):
            context.add("slug", "slug could not be derived from the name", code="required")
        check_pattern_sets(Rbac, document.get("permissions"), document.get("forbidden"), context)
        context.errors.extend(model_errors(Role, document, skip=[e.field for e in context.errors]))
        raise_for_errors(context.errors)

    async def _is_already_exist(
        self, membership: Membership, document: dict, current: Optional[dict]
    ) -> bool:
        existing = await self._store.find_one(
            self.collection,
            and_(eq("membership_id", membership.id), eq("slug", document.get("slug"))),
        )
        return existing is not None and (current is None or existing[ID_FIELD] != current[ID_FIELD])

    def _already_exists_error(
        self, document: dict, keys: Sequence[UniqueKey] = ()
    ) -> AlreadyExistsError:
        slug = document.get("slug")
        return AlreadyExistsError(
            f"Role '{slug}' already exists",
            errors=[FieldError("slug", "slug must be unique", code="not_unique", value=slug)],
        )

    async def _unique_keys(self, membership: Membership, document: dict) -> Sequence[UniqueKey]:
        return [UniqueKey(membership.id, "slug", document.get("slug"))]

    # -- bootstrap -------------------------------------------------------------

    async def bootstrap(self) -> list[Role]:
        """Make sure every membership has a stored administrator role."""
        created: list[Role] = []
        for membership in await self._memberships.get_all():
            existing = await self._store.find_one(
                self.collection,
                and_(eq("membership_id", membership.id), eq("slug", ReservedRoles.ADMINISTRATOR.value)),
            )
            if existing is None:
                role = await self.create(
                    SystemUtilizer(membership_id=membership.id),
                    membership.id,
                    {
                        "name": "Administrator",
                        "slug": ReservedRoles.ADMINISTRATOR.value,
                        "description": "Administrator role",
                        "permissions": admin_permissions(),
                        "forbidden": [],
                    },
                )
                created.append(role)
                log.info("role.administrator_bootstrapped", membership_id=membership.id, id=role.id)
            else:
                await self.refresh_cache(membership.id)
        return created
