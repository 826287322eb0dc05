"""
User type registry.

User types are tenant-defined schemas for user documents. Every type extends
another one through ``base_type`` and the chain ends at the built-in
``base-user`` origin type, which is synthesized when a membership has not
stored its own copy.
"""

from __future__ import annotations

from typing import Optional, Sequence

import structlog

from identity_core.core.documents import slugify
from identity_core.core.exceptions import (
    AlreadyExistsError,
    FieldError,
    UserTypeNotFoundError,
)
from identity_core.services.crud import AnyUtilizer, MembershipBoundedCrudService
from identity_core.services.schema import model_errors, raise_for_errors
from identity_core.store.base import ID_FIELD, UniqueKey, and_, eq, or_
from identity_shared.schemas.events import EventType
from identity_shared.schemas.memberships import Membership
from identity_shared.schemas.user_types import (
    ORIGIN_USER_TYPE_SLUG,
    PropertyDefinition,
    UserType,
    origin_user_type,
)

log = structlog.get_logger()

USER_TYPES_COLLECTION = "user_types"


class UserTypeService(MembershipBoundedCrudService):
    collection = USER_TYPES_COLLECTION
    resource_name = "User type"
    log_name = "user_type"
    search_fields = ("name", "slug", "description")

    created_event = EventType.USER_TYPE_CREATED
    updated_event = EventType.USER_TYPE_UPDATED
    deleted_event = EventType.USER_TYPE_DELETED

    def _to_result(self, document: dict) -> UserType:
        return UserType.model_validate(document)

    def _not_found(self, document_id: str) -> UserTypeNotFoundError:
        return UserTypeNotFoundError(document_id, ID_FIELD)

    # -- registry --------------------------------------------------------------

    async def get_by_name_or_slug(self, membership_id: str, name_or_slug: str) -> Optional[UserType]:
        if not name_or_slug:
            return None
        document = await self._store.find_one(
            self.collection,
            self._tenant_filter(membership_id, or_(eq("name", name_or_slug), eq("slug", name_or_slug))),
        )
        if document is not None:
            return self._to_result(document)
        if name_or_slug == ORIGIN_USER_TYPE_SLUG:
            return origin_user_type(membership_id)
        return None

    async def require(self, membership_id: str, name_or_slug: str) -> UserType:
        user_type = await self.get_by_name_or_slug(membership_id, name_or_slug)
        if user_type is None:
            raise UserTypeNotFoundError(name_or_slug)
        return user_type

    async def get_chain(self, membership_id: str, user_type: UserType) -> list[UserType]:
        """The type followed by its ancestors, nearest first."""
        chain = [user_type]
        seen = {user_type.slug}
        base = user_type.base_type
        while base and base not in seen:
            parent = await self.get_by_name_or_slug(membership_id, base)
            if parent is None:
                log.warning("user_type.base_missing", membership_id=membership_id, slug=user_type.slug, base_type=base)
                break
            chain.append(parent)
            seen.add(parent.slug)
            base = parent.base_type
        return chain

    async def is_inherit_from(self, membership_id: str, type_slug: str, ancestor_slug: str) -> bool:
        """True if ``type_slug`` is ``ancestor_slug`` or extends it through the base chain."""
        if type_slug == ancestor_slug:
            return True
        user_type = await self.get_by_name_or_slug(membership_id, type_slug)
        if user_type is None:
            return False
        chain = await self.get_chain(membership_id, user_type)
        return any(ancestor_slug in (t.slug, t.name) for t in chain)

    async def get_effective_properties(
        self, membership_id: str, user_type: UserType
    ) -> dict[str, PropertyDefinition]:
        properties: dict[str, PropertyDefinition] = {}
        for ancestor in reversed(await self.get_chain(membership_id, user_type)):
            properties.update(ancestor.properties)
        return properties

    async def get_effective_required(self, membership_id: str, user_type: UserType) -> list[str]:
        required: list[str] = []
        for ancestor in reversed(await self.get_chain(membership_id, user_type)):
            required.extend(r for r in ancestor.required if r not in required)
        return required

    # -- pipeline hooks --------------------------------------------------------

    async def _prepare_create(
        self, utilizer: AnyUtilizer, membership: Membership, document: dict, payload: dict
    ) -> dict:
        slug = document.get("slug") or document.get("name")
        if isinstance(slug, str):
            document["slug"] = slugify(slug)
        if document.get("slug") != ORIGIN_USER_TYPE_SLUG:
            document.setdefault("base_type", ORIGIN_USER_TYPE_SLUG)
        return document

    async def _prepare_update(
        self,
        utilizer: AnyUtilizer,
        membership: Membership,
        current: dict,
        patch: dict,
        payload: dict,
    ) -> dict:
        if isinstance(patch.get("slug"), str):
            patch["slug"] = slugify(patch["slug"])
        return patch

    async def _validate(
        self,
        utilizer: AnyUtilizer,
        membership: Membership,
        document: dict,
        current: Optional[dict],
    ) -> None:
        errors: list[FieldError] = []
        name = document.get("name")
        if not isinstance(name, str) or not name.strip():
            errors.append(FieldError("name", "name is a required field", code="required"))
        if current is not None and document.get("slug") != current.get("slug"):
            errors.append(FieldError("slug", "The slug of a user type cannot be changed", code="immutable"))

        errors.extend(model_errors(UserType, document, skip=[e.field for e in errors]))

        base_type = document.get("base_type")
        slug = document.get("slug")
        if base_type:
            base = await self.get_by_name_or_slug(membership.id, base_type)
            if base is None:
                errors.append(FieldError("base_type", f"Base type '{base_type}' not found", code="not_found", value=base_type))
            elif slug and await self.is_inherit_from(membership.id, base.slug, slug):
                errors.append(FieldError("base_type", "A user type cannot extend itself", code="circular", value=base_type))
        raise_for_errors(errors)

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
            f"User type '{slug}' already exists",
            errors=[FieldError("slug", "slug must be unique", code="not_unique", value=slug)],
        )

    async def _unique_keys(self, membership: Membership, document: dict) -> Sequence[UniqueKey]:
        return [UniqueKey(membership.id, "slug", document.get("slug"))]
