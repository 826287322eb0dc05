"""
Schema engine for dynamic user documents.

``SchemaValidator.collect`` walks a document against its user type and
records every problem as a ``FieldError`` instead of stopping at the first
one. Steps, in order:

1. the type must not be abstract
2. the type of an existing document cannot change
3. required paths are present and declared kinds are respected
4. unique properties do not collide with another document of the membership
5. reference properties resolve to documents of the expected type and are
   embedded in place
6. the document's own ``permissions`` and ``forbidden`` sets do not conflict

``validate`` raises the aggregate when anything was recorded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Optional, Sequence

import structlog
from pydantic import BaseModel, ValidationError

from identity_core.core.documents import MISSING, get_value, set_value, without
from identity_core.core.exceptions import (
    AlreadyExistsError,
    ConflictingPatternsError,
    FieldError,
    ImmutableError,
    MalformedPatternError,
    ValidationFailedError,
)
from identity_core.core.permissions import Ubac, find_conflicts
from identity_core.store.base import ID_FIELD, DocumentStore, and_, eq, object_id
from identity_shared.schemas.user_types import (
    FieldType,
    PropertyDefinition,
    PropertyKind,
    ReferenceType,
    UserType,
)

if TYPE_CHECKING:
    from identity_core.services.user_types import UserTypeService

log = structlog.get_logger()

USER_TYPE_FIELD = "user_type"
PERMISSIONS_FIELD = "permissions"
FORBIDDEN_FIELD = "forbidden"
PASSWORD_HASH_FIELD = "password_hash"

CONFLICT_CODE = "conflicting_patterns"
IMMUTABLE_CODE = "immutable"
UNIQUE_CODE = "not_unique"


@dataclass
class ValidationContext:
    membership_id: str
    document_id: Optional[str] = None
    current: Optional[dict] = None
    errors: list[FieldError] = field(default_factory=list)

    def add(self, path: str, reason: str, code: str = "invalid", value: Any = None) -> None:
        if value is None:
            self.errors.append(FieldError(path, reason, code=code))
        else:
            self.errors.append(FieldError(path, reason, code=code, value=value))


def model_errors(model: type[BaseModel], document: dict, skip: Sequence[str] = ()) -> list[FieldError]:
    """Field errors for ``document`` against a pydantic model, leaving out top-level fields in ``skip``."""
    try:
        model.model_validate(document)
    except ValidationError as exc:
        errors = []
        for error in exc.errors():
            path = ".".join(str(p) for p in error["loc"]) or "__root__"
            if path.split(".")[0] not in skip:
                errors.append(FieldError(path, error["msg"], code="type_mismatch"))
        return errors
    return []


def raise_for_errors(errors: Sequence[FieldError]) -> None:
    if not errors:
        return
    codes = {e.code for e in errors}
    if CONFLICT_CODE in codes:
        raise ConflictingPatternsError(errors)
    if IMMUTABLE_CODE in codes:
        raise ImmutableError(errors)
    if UNIQUE_CODE in codes:
        raise AlreadyExistsError("A unique value is already in use", errors=errors)
    raise ValidationFailedError(errors)


def check_pattern_sets(
    pattern_cls, allow: Any, deny: Any, context: ValidationContext,
    allow_field: str = PERMISSIONS_FIELD, deny_field: str = FORBIDDEN_FIELD,
) -> None:
    """Parse both pattern lists and record malformed entries and allow/deny overlaps."""
    parsed = {}
    for path, raw in ((allow_field, allow), (deny_field, deny)):
        if raw is None:
            parsed[path] = []
            continue
        if not isinstance(raw, list):
            context.add(path, f"'{path}' must be a list of patterns", code="type_mismatch")
            parsed[path] = []
            continue
        patterns = []
        for item in raw:
            try:
                patterns.append(pattern_cls.parse(item))
            except MalformedPatternError as exc:
                context.add(path, exc.message, code="malformed_pattern", value=str(item))
        parsed[path] = patterns

    for conflict in find_conflicts(parsed[allow_field], parsed[deny_field]):
        context.add(
            allow_field,
            f"Pattern '{conflict}' is both permitted and forbidden",
            code=CONFLICT_CODE,
            value=str(conflict),
        )


def _is_date(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    if not isinstance(value, str):
        return False
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def _is_reference_value(value: Any) -> bool:
    return isinstance(value, str) or (isinstance(value, dict) and isinstance(value.get(ID_FIELD), str))


def _matches_type(definition: PropertyDefinition, value: Any) -> bool:
    kind = definition.type
    if kind == FieldType.STRING:
        return isinstance(value, str)
    if kind == FieldType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if kind == FieldType.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if kind == FieldType.BOOLEAN:
        return isinstance(value, bool)
    if kind == FieldType.OBJECT:
        return isinstance(value, dict)
    if kind == FieldType.ARRAY:
        return isinstance(value, list)
    if kind == FieldType.DATE:
        return _is_date(value)
    if definition.reference_type == ReferenceType.MULTIPLE:
        return isinstance(value, list) and all(_is_reference_value(v) for v in value)
    return _is_reference_value(value)


class SchemaValidator:
    def __init__(self, store: DocumentStore, collection: str, user_types: "UserTypeService"):
        self._store = store
        self._collection = collection
        self._user_types = user_types

    async def collect(
        self, document: dict, user_type: UserType, context: ValidationContext
    ) -> list[FieldError]:
        """Run every step and return the accumulated errors. References are embedded in place."""
        self._check_abstract(user_type, context)
        self._check_immutable_type(document, context)

        properties = await self._user_types.get_effective_properties(context.membership_id, user_type)
        required = await self._user_types.get_effective_required(context.membership_id, user_type)
        structurally_valid = self._check_structure(document, properties, required, context)

        await self._check_uniqueness(document, properties, structurally_valid, context)
        await self._resolve_references(document, properties, structurally_valid, context)
        check_pattern_sets(
            Ubac, document.get(PERMISSIONS_FIELD), document.get(FORBIDDEN_FIELD), context
        )
        if context.errors:
            log.info(
                "schema.validation_failed",
                membership_id=context.membership_id,
                user_type=user_type.slug,
                fields=sorted({e.field for e in context.errors}),
            )
        return context.errors

    async def validate(self, document: dict, user_type: UserType, context: ValidationContext) -> None:
        raise_for_errors(await self.collect(document, user_type, context))

    # -- steps ---------------------------------------------------------------

    def _check_abstract(self, user_type: UserType, context: ValidationContext) -> None:
        if user_type.is_abstract:
            context.add(
                USER_TYPE_FIELD,
                f"User type '{user_type.slug}' is abstract and cannot be assigned to a document",
                code="abstract_type",
                value=user_type.slug,
            )

    def _check_immutable_type(self, document: dict, context: ValidationContext) -> None:
        if context.current is None:
            return
        persisted = context.current.get(USER_TYPE_FIELD)
        if persisted and document.get(USER_TYPE_FIELD) != persisted:
            context.add(
                USER_TYPE_FIELD,
                "The user type of a document cannot be changed",
                code=IMMUTABLE_CODE,
                value=document.get(USER_TYPE_FIELD),
            )

    def _check_structure(
        self,
        document: dict,
        properties: dict[str, PropertyDefinition],
        required: Sequence[str],
        context: ValidationContext,
    ) -> set[str]:
        """Record missing required paths and kind mismatches; return the paths that passed."""
        for path in required:
            value = get_value(document, path, MISSING)
            if value is MISSING or value is None or value == "":
                context.add(path, f"'{path}' is a required field", code="required")

        valid: set[str] = set()
        for path, definition in properties.items():
            value = get_value(document, path, MISSING)
            if value is MISSING or value is None:
                continue
            if _matches_type(definition, value):
                valid.add(path)
            else:
                expected = definition.type.value
                if definition.type == FieldType.REFERENCE:
                    expected = f"{definition.reference_type.value} reference"
                context.add(path, f"'{path}' must be of type {expected}", code="type_mismatch")
        return valid

    async def _check_uniqueness(
        self,
        document: dict,
        properties: dict[str, PropertyDefinition],
        valid_paths: set[str],
        context: ValidationContext,
    ) -> None:
        for path, definition in properties.items():
            if definition.kind != PropertyKind.UNIQUE or path not in valid_paths:
                continue
            value = get_value(document, path)
            if isinstance(value, (dict, list)):
                continue
            existing = await self._store.find_one(
                self._collection,
                and_(eq("membership_id", context.membership_id), eq(path, value)),
            )
            if existing is not None and existing.get(ID_FIELD) != context.document_id:
                context.add(path, f"'{path}' must be unique", code=UNIQUE_CODE, value=value)

    async def _resolve_references(
        self,
        document: dict,
        properties: dict[str, PropertyDefinition],
        valid_paths: set[str],
        context: ValidationContext,
    ) -> None:
        for path, definition in properties.items():
            if definition.kind != PropertyKind.REFERENCE or path not in valid_paths:
                continue
            value = get_value(document, path)
            if definition.reference_type == ReferenceType.MULTIPLE:
                resolved = [await self._resolve_one(path, definition, item, context) for item in value]
                if all(r is not None for r in resolved):
                    set_value(document, path, resolved)
            else:
                item = await self._resolve_one(path, definition, value, context)
                if item is not None:
                    set_value(document, path, item)

    async def _resolve_one(
        self,
        path: str,
        definition: PropertyDefinition,
        value: Any,
        context: ValidationContext,
    ) -> Optional[dict]:
        reference_id = value[ID_FIELD] if isinstance(value, dict) else value
        target = await self._store.find_one(
            self._collection,
            and_(eq("membership_id", context.membership_id), object_id(reference_id)),
        )
        if target is None:
            context.add(path, f"Referenced document '{reference_id}' not found", code="reference_not_found", value=reference_id)
            return None

        if definition.content_type:
            target_type = target.get(USER_TYPE_FIELD)
            if not target_type:
                context.add(
                    path,
                    f"Referenced document '{reference_id}' has no user type",
                    code="reference_type_missing",
                    value=reference_id,
                )
                return None
            if not await self._user_types.is_inherit_from(
                context.membership_id, target_type, definition.content_type
            ):
                context.add(
                    path,
                    f"Referenced document '{reference_id}' is a '{target_type}', "
                    f"expected '{definition.content_type}'",
                    code="content_type_mismatch",
                    value=reference_id,
                )
                return None

        return without(target, PASSWORD_HASH_FIELD)
