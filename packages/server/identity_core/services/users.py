"""
User service: tenant-defined user documents.

A user document is validated against its user type (falling back to the
origin ``base-user`` type for locally registered users), its role must exist
in the membership, and local users need a password, which is hashed into
``password_hash`` on create. ``password_hash`` is never returned.
"""

from __future__ import annotations

from typing import Optional, Sequence

import structlog

from identity_core.core.config import Settings, get_settings
from identity_core.core.documents import get_value, is_scalar
from identity_core.core.events import EventEmitter
from identity_core.core.exceptions import (
    UserNotFoundError,
    UserTypeRequiredError,
)
from identity_core.core.security import calculate_password_hash
from identity_core.services.crud import (
    AnyUtilizer,
    MembershipBoundedCrudService,
    run_to_completion,
)
from identity_core.services.memberships import MembershipService
from identity_core.services.passwords import ensure_password
from identity_core.services.roles import RoleService
from identity_core.services.schema import (
    PASSWORD_HASH_FIELD,
    USER_TYPE_FIELD,
    SchemaValidator,
    ValidationContext,
    raise_for_errors,
)
from identity_core.services.user_types import UserTypeService
from identity_core.store.base import ID_FIELD, DocumentStore, UniqueKey, eq, or_
from identity_shared.schemas.common import SourceProvider
from identity_shared.schemas.events import EventType
from identity_shared.schemas.memberships import Membership
from identity_shared.schemas.user_types import ORIGIN_USER_TYPE_SLUG, PropertyKind, UserType

log = structlog.get_logger()

USERS_COLLECTION = "users"
SOURCE_PROVIDER_FIELD = "sourceProvider"


def resolve_source_provider(value: Optional[str]) -> SourceProvider:
    """Parse a provider tag; anything unknown means a local user."""
    if value is None:
        return SourceProvider.LOCAL
    try:
        return SourceProvider(str(value).lower())
    except ValueError:
        log.info("user.source_provider_fallback", value=value)
        return SourceProvider.LOCAL


class UserService(MembershipBoundedCrudService):
    collection = USERS_COLLECTION
    resource_name = "User"
    log_name = "user"
    search_fields = ("username", "email_address", "firstname", "lastname")
    managed_fields = MembershipBoundedCrudService.managed_fields + ("password", PASSWORD_HASH_FIELD)
    hidden_fields = (PASSWORD_HASH_FIELD,)

    created_event = EventType.USER_CREATED
    updated_event = EventType.USER_UPDATED
    deleted_event = EventType.USER_DELETED

    def __init__(
        self,
        store: DocumentStore,
        memberships: MembershipService,
        roles: RoleService,
        user_types: UserTypeService,
        emitter: Optional[EventEmitter] = None,
        settings: Optional[Settings] = None,
    ):
        super().__init__(store, memberships, emitter)
        self._roles = roles
        self._user_types = user_types
        self._settings = settings or get_settings()
        self.schema = SchemaValidator(store, self.collection, user_types)

    def _not_found(self, document_id: str) -> UserNotFoundError:
        return UserNotFoundError(document_id)

    # -- lookups ---------------------------------------------------------------

    async def get_raw(self, membership_id: str, user_id: str) -> Optional[dict]:
        """The stored user document, password hash included. Not for callers outside the core."""
        return await self._find_raw(membership_id, user_id)

    async def find_by_username_or_email(self, membership_id: str, identifier: str) -> Optional[dict]:
        if not identifier:
            return None
        return await self._store.find_one(
            self.collection,
            self._tenant_filter(
                membership_id, or_(eq("username", identifier), eq("email_address", identifier))
            ),
        )

    # -- pipeline hooks --------------------------------------------------------

    async def _prepare_create(
        self, utilizer: AnyUtilizer, membership: Membership, document: dict, payload: dict
    ) -> dict:
        provider = resolve_source_provider(document.get(SOURCE_PROVIDER_FIELD))
        document[SOURCE_PROVIDER_FIELD] = provider.value
        if provider == SourceProvider.LOCAL:
            ensure_password(payload, self._settings.password_min_length)
        return document

    async def _prepare_update(
        self,
        utilizer: AnyUtilizer,
        membership: Membership,
        current: dict,
        patch: dict,
        payload: dict,
    ) -> dict:
        if SOURCE_PROVIDER_FIELD in patch:
            patch[SOURCE_PROVIDER_FIELD] = resolve_source_provider(patch[SOURCE_PROVIDER_FIELD]).value
        return patch

    async def _resolve_user_type(self, membership_id: str, document: dict) -> Optional[UserType]:
        name = document.get(USER_TYPE_FIELD)
        if not name:
            if document.get(SOURCE_PROVIDER_FIELD) != SourceProvider.LOCAL.value:
                raise UserTypeRequiredError()
            name = ORIGIN_USER_TYPE_SLUG
        user_type = await self._user_types.get_by_name_or_slug(membership_id, name)
        if user_type is not None:
            document[USER_TYPE_FIELD] = user_type.slug
        return user_type

    async def _validate(
        self,
        utilizer: AnyUtilizer,
        membership: Membership,
        document: dict,
        current: Optional[dict],
    ) -> None:
        context = ValidationContext(
            membership.id, current[ID_FIELD] if current else None, current
        )
        requested_type = document.get(USER_TYPE_FIELD)
        user_type = await self._resolve_user_type(membership.id, document)
        if user_type is None:
            context.add(USER_TYPE_FIELD, f"User type '{requested_type}' not found", code="not_found", value=requested_type)
        else:
            await self.schema.collect(document, user_type, context)

        role = document.get("role")
        if isinstance(role, str) and role and await self._roles.get_by_name(membership.id, role) is None:
            context.add("role", f"Role '{role}' not found", code="not_found", value=role)
        raise_for_errors(context.errors)

    async def _unique_keys(self, membership: Membership, document: dict) -> Sequence[UniqueKey]:
        user_type = await self._user_types.get_by_name_or_slug(membership.id, document.get(USER_TYPE_FIELD))
        if user_type is None:
            return []
        properties = await self._user_types.get_effective_properties(membership.id, user_type)
        keys = []
        for path, definition in properties.items():
            value = get_value(document, path)
            if definition.kind == PropertyKind.UNIQUE and value is not None and is_scalar(value):
                keys.append(UniqueKey(membership.id, path, value))
        return keys

    async def _before_persist(
        self,
        utilizer: AnyUtilizer,
        membership: Membership,
        document: dict,
        current: Optional[dict],
        payload: dict,
    ) -> None:
        if current is None and document.get(SOURCE_PROVIDER_FIELD) == SourceProvider.LOCAL.value:
            document[PASSWORD_HASH_FIELD] = calculate_password_hash(
                membership, payload["password"], self._settings
            )

    # -- credentials -----------------------------------------------------------

    async def update_password_hash(
        self,
        utilizer: AnyUtilizer,
        membership: Membership,
        current: dict,
        password_hash: str,
    ) -> dict:
        """Write a new password hash and emit ``UserPasswordChanged``."""
        user_id = current[ID_FIELD]
        document = {k: v for k, v in current.items() if k != ID_FIELD}
        document[PASSWORD_HASH_FIELD] = password_hash
        self._stamp_sys(document, utilizer, current)
        unique_keys = await self._unique_keys(membership, document)

        async def persist() -> dict:
            if not await self._store.replace(self.collection, user_id, document, unique_keys):
                raise self._not_found(user_id)
            presented = self._present({ID_FIELD: user_id, **document})
            await self._emit(
                EventType.USER_PASSWORD_CHANGED,
                utilizer,
                membership.id,
                presented,
                prior=self._present(current),
            )
            return presented

        presented = await run_to_completion(persist())
        log.info("user.password_changed", membership_id=membership.id, id=user_id, utilizer=utilizer.id)
        return presented
