"""
Tests for the schema engine and the user type registry.

Covers:
- Required fields and declared kinds
- Uniqueness within a membership, excluding the document itself
- Single and multiple references with content-type inheritance
- Abstract and immutable user types
- Ubac conflicts on the user's own permission sets
- Error accumulation
"""

from __future__ import annotations

import pytest

from conftest import M1, M2, user_payload
from identity_core.core.exceptions import (
    AlreadyExistsError,
    ConflictingPatternsError,
    FieldError,
    ImmutableError,
    ValidationFailedError,
)
from identity_core.services.schema import ValidationContext, model_errors, raise_for_errors
from identity_shared.schemas.roles import Role
from identity_shared.schemas.user_types import ORIGIN_USER_TYPE_SLUG, PropertyDefinition, PropertyKind


EMPLOYEE_TYPE = {
    "name": "Employee",
    "properties": {
        "employee_no": {"type": "string", "is_unique": True},
        "age": {"type": "integer"},
        "hired_at": {"type": "date"},
        "manager": {"type": "reference", "reference_type": "single", "content_type": "employee"},
        "buddies": {"type": "reference", "reference_type": "multiple"},
    },
    "required": ["employee_no"],
}


def _codes(exc) -> dict[str, str]:
    return {e.field: e.code for e in exc.errors}


@pytest.fixture
async def employee_type(core, system):
    return await core.user_types.create(system, M1, EMPLOYEE_TYPE)


async def _employee(core, admin, n: int, **extra):
    payload = user_payload(
        username=f"emp{n}",
        email_address=f"emp{n}@example.com",
        user_type="employee",
        employee_no=f"E{n:03d}",
        **extra,
    )
    return await core.users.create(admin, M1, payload)


# ---------------------------------------------------------------------------
# User type registry
# ---------------------------------------------------------------------------

class TestUserTypes:
    """Test user type creation and inheritance."""

    async def test_create_derives_slug_and_base(self, employee_type):
        """The slug comes from the name and the base defaults to the origin type."""
        assert employee_type.slug == "employee"
        assert employee_type.base_type == ORIGIN_USER_TYPE_SLUG

    async def test_origin_type_is_synthesized(self, core):
        """The origin user type exists in every membership."""
        origin = await core.user_types.get_by_name_or_slug(M1, ORIGIN_USER_TYPE_SLUG)
        assert origin is not None
        assert origin.required == ["username", "email_address", "role"]

    async def test_inheritance(self, core, system, employee_type):
        """Inheritance is transitive and one-way."""
        await core.user_types.create(system, M1, {"name": "Manager", "base_type": "employee"})
        assert await core.user_types.is_inherit_from(M1, "manager", "employee")
        assert await core.user_types.is_inherit_from(M1, "manager", ORIGIN_USER_TYPE_SLUG)
        assert not await core.user_types.is_inherit_from(M1, "employee", "manager")

    async def test_effective_properties_include_ancestors(self, core, employee_type):
        """Properties and required fields are inherited."""
        properties = await core.user_types.get_effective_properties(M1, employee_type)
        assert {"username", "email_address", "employee_no", "manager"} <= set(properties)
        required = await core.user_types.get_effective_required(M1, employee_type)
        assert required == ["username", "email_address", "role", "employee_no"]

    async def test_unknown_base_type(self, core, system):
        """A missing base type is reported."""
        with pytest.raises(ValidationFailedError) as exc_info:
            await core.user_types.create(system, M1, {"name": "Orphan", "base_type": "nope"})
        assert _codes(exc_info.value)["base_type"] == "not_found"

    async def test_invalid_property_definition(self, core, system):
        """A reference property needs a content type."""
        with pytest.raises(ValidationFailedError):
            await core.user_types.create(
                system, M1, {"name": "Broken", "properties": {"x": {"type": "reference"}}}
            )

    async def test_duplicate_slug(self, core, system, employee_type):
        """User type slugs are unique within a membership."""
        with pytest.raises(AlreadyExistsError):
            await core.user_types.create(system, M1, {"name": "employee"})

    async def test_explicit_slug_is_normalized(self, core, system, employee_type):
        """An explicit slug is slugified and checked for uniqueness afterwards."""
        contractor = await core.user_types.create(system, M1, {"name": "Contractor", "slug": "Field Contractor"})
        assert contractor.slug == "field-contractor"
        with pytest.raises(AlreadyExistsError):
            await core.user_types.create(system, M1, {"name": "Temp", "slug": "EMPLOYEE"})

    async def test_types_are_per_membership(self, core, system, employee_type):
        """User types are not visible to other memberships."""
        assert await core.user_types.get_by_name_or_slug(M2, "employee") is None


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------

class TestStructure:
    """Test structural validation of user documents."""

    async def test_valid_document(self, core, admin, employee_type):
        """A matching document passes."""
        user = await _employee(core, admin, 1, age=30, hired_at="2024-03-01")
        assert user["user_type"] == "employee"
        assert user["age"] == 30

    async def test_missing_required_and_wrong_kind_are_reported_together(self, core, admin, employee_type):
        """All structural errors are reported at once."""
        payload = user_payload(user_type="employee", age="thirty", hired_at="not a date")
        payload.pop("email_address")
        with pytest.raises(ValidationFailedError) as exc_info:
            await core.users.create(admin, M1, payload)
        codes = _codes(exc_info.value)
        assert codes["employee_no"] == "required"
        assert codes["email_address"] == "required"
        assert codes["age"] == "type_mismatch"
        assert codes["hired_at"] == "type_mismatch"

    async def test_boolean_is_not_an_integer(self, core, admin, employee_type):
        """A boolean does not satisfy an integer property."""
        with pytest.raises(ValidationFailedError) as exc_info:
            await _employee(core, admin, 1, age=True)
        assert _codes(exc_info.value)["age"] == "type_mismatch"

    async def test_unknown_user_type(self, core, admin):
        """An unknown user type is reported."""
        with pytest.raises(ValidationFailedError) as exc_info:
            await core.users.create(admin, M1, user_payload(user_type="ghost"))
        assert _codes(exc_info.value)["user_type"] == "not_found"

    async def test_abstract_type_cannot_be_assigned(self, core, system, admin):
        """Users cannot be of an abstract type."""
        await core.user_types.create(system, M1, {"name": "Person", "is_abstract": True})
        with pytest.raises(ValidationFailedError) as exc_info:
            await core.users.create(admin, M1, user_payload(user_type="person"))
        assert _codes(exc_info.value)["user_type"] == "abstract_type"


# ---------------------------------------------------------------------------
# Uniqueness
# ---------------------------------------------------------------------------

class TestUniqueness:
    """Test unique properties."""

    async def test_duplicate_unique_property(self, core, admin, employee_type):
        """A taken unique value is refused."""
        await _employee(core, admin, 1)
        payload = user_payload(username="other", email_address="other@example.com", user_type="employee", employee_no="E001")
        with pytest.raises(AlreadyExistsError) as exc_info:
            await core.users.create(admin, M1, payload)
        assert _codes(exc_info.value) == {"employee_no": "not_unique"}

    async def test_update_excludes_self(self, core, admin, employee_type):
        """A document does not clash with itself."""
        user = await _employee(core, admin, 1)
        updated = await core.users.update(admin, M1, user["_id"], {"firstname": "Jane", "employee_no": "E001"})
        assert updated["firstname"] == "Jane"

    async def test_same_value_in_another_membership(self, core, admin, system):
        """Unique values are scoped per membership."""
        await core.users.create(admin, M1, user_payload())
        other_admin = admin.model_copy(update={"membership_id": M2})
        user = await core.users.create(other_admin, M2, user_payload())
        assert user["membership_id"] == M2


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------

class TestReferences:
    """Test reference resolution and embedding."""

    async def test_single_reference_is_embedded(self, core, admin, employee_type):
        """A single reference is replaced by the referenced document."""
        boss = await _employee(core, admin, 1)
        user = await _employee(core, admin, 2, manager=boss["_id"])
        assert user["manager"]["_id"] == boss["_id"]
        assert user["manager"]["username"] == "emp1"
        assert "password_hash" not in user["manager"]

        stored = await core.users.get(M1, user["_id"])
        assert stored["manager"]["username"] == "emp1"

    async def test_embedded_reference_survives_update(self, core, admin, employee_type):
        """An embedded reference is kept across updates."""
        boss = await _employee(core, admin, 1)
        user = await _employee(core, admin, 2, manager=boss["_id"])
        updated = await core.users.update(admin, M1, user["_id"], {"lastname": "Smith"})
        assert updated["manager"]["_id"] == boss["_id"]

    async def test_multiple_references(self, core, admin, employee_type):
        """A list of references is resolved in order."""
        a = await _employee(core, admin, 1)
        b = await core.users.create(admin, M1, user_payload(username="plain", email_address="plain@example.com"))
        user = await _employee(core, admin, 3, buddies=[a["_id"], b["_id"]])
        assert [d["_id"] for d in user["buddies"]] == [a["_id"], b["_id"]]

    async def test_missing_reference(self, core, admin, employee_type):
        """A reference to a missing document is reported."""
        with pytest.raises(ValidationFailedError) as exc_info:
            await _employee(core, admin, 1, manager="does-not-exist")
        assert _codes(exc_info.value)["manager"] == "reference_not_found"

    async def test_partial_multiple_resolution_fails_property(self, core, admin, employee_type):
        """One missing id fails the whole property."""
        a = await _employee(core, admin, 1)
        with pytest.raises(ValidationFailedError) as exc_info:
            await _employee(core, admin, 2, buddies=[a["_id"], "missing"])
        assert _codes(exc_info.value)["buddies"] == "reference_not_found"

    async def test_content_type_mismatch(self, core, admin, employee_type):
        """A reference of the wrong type is refused."""
        plain = await core.users.create(admin, M1, user_payload())
        with pytest.raises(ValidationFailedError) as exc_info:
            await _employee(core, admin, 1, manager=plain["_id"])
        assert _codes(exc_info.value)["manager"] == "content_type_mismatch"

    async def test_descendant_type_satisfies_content_type(self, core, system, admin, employee_type):
        """A descendant type satisfies the content type."""
        await core.user_types.create(system, M1, {"name": "Manager", "base_type": "employee"})
        boss = await core.users.create(
            admin, M1,
            user_payload(username="boss", email_address="boss@example.com", user_type="manager", employee_no="M001"),
        )
        user = await _employee(core, admin, 1, manager=boss["_id"])
        assert user["manager"]["user_type"] == "manager"

    async def test_reference_across_memberships_is_not_found(self, core, admin, employee_type):
        """References never cross memberships."""
        other_admin = admin.model_copy(update={"membership_id": M2})
        foreign = await core.users.create(other_admin, M2, user_payload())
        with pytest.raises(ValidationFailedError) as exc_info:
            await _employee(core, admin, 1, buddies=[foreign["_id"]])
        assert _codes(exc_info.value)["buddies"] == "reference_not_found"


# ---------------------------------------------------------------------------
# Immutable type, Ubac conflicts
# ---------------------------------------------------------------------------

class TestGuards:
    """Test user type and permission guards on users."""

    async def test_user_type_is_immutable(self, core, admin, employee_type):
        """The user type of a user cannot change."""
        user = await core.users.create(admin, M1, user_payload())
        with pytest.raises(ImmutableError) as exc_info:
            await core.users.update(admin, M1, user["_id"], {"user_type": "employee", "employee_no": "E9"})
        assert _codes(exc_info.value)["user_type"] == "immutable"

    async def test_conflicting_user_permissions(self, core, admin):
        """Conflicting user permissions are refused."""
        payload = user_payload(permissions=["users.read.*"], forbidden=["USERS.read.*"])
        with pytest.raises(ConflictingPatternsError) as exc_info:
            await core.users.create(admin, M1, payload)
        assert isinstance(exc_info.value, ValidationFailedError)

    async def test_non_conflicting_user_permissions(self, core, admin):
        """Compatible user permissions are stored."""
        payload = user_payload(permissions=["users.*.*"], forbidden=["users.delete.*"])
        user = await core.users.create(admin, M1, payload)
        assert user["permissions"] == ["users.*.*"]

    async def test_malformed_user_permission(self, core, admin):
        """A malformed user permission is refused."""
        with pytest.raises(ValidationFailedError) as exc_info:
            await core.users.create(admin, M1, user_payload(permissions=["users.read"]))
        assert _codes(exc_info.value)["permissions"] == "malformed_pattern"


class TestRaiseForErrors:
    """Test how collected errors map to exceptions."""

    def test_nothing_recorded(self):
        """No errors raise nothing."""
        raise_for_errors([])

    def test_conflicts_take_precedence(self):
        """Conflicts win over other error kinds."""
        context = ValidationContext(M1)
        context.add("name", "required", code="required")
        context.add("permissions", "conflict", code="conflicting_patterns")
        with pytest.raises(ConflictingPatternsError) as exc_info:
            raise_for_errors(context.errors)
        assert len(exc_info.value.errors) == 2

    def test_error_payload_shape(self):
        """Errors carry field, message and code."""
        with pytest.raises(ValidationFailedError) as exc_info:
            raise_for_errors([FieldError("age", "bad", code="type_mismatch", value=3)])
        body = exc_info.value.to_dict()["error"]
        assert body["code"] == "validation_failed"
        assert body["details"]["errors"] == [{"field": "age", "reason": "bad", "code": "type_mismatch", "value": 3}]

    async def test_validate_raises_collected_errors(self, core, employee_type):
        """validate raises once with every collected error."""
        context = ValidationContext(M1)
        with pytest.raises(ValidationFailedError) as exc_info:
            await core.users.schema.validate({"user_type": "employee"}, employee_type, context)
        assert {"username", "email_address", "role", "employee_no"} <= set(_codes(exc_info.value))

    def test_model_errors(self):
        """Pydantic errors become type mismatches on dotted paths."""
        errors = model_errors(Role, {"name": "Viewer", "description": 5, "permissions": ["a.b.c", 7]})
        assert sorted(e.field for e in errors) == ["description", "permissions.1"]
        assert {e.code for e in errors} == {"type_mismatch"}
        assert model_errors(Role, {"description": 5}, skip=["name"])[0].field == "description"
        assert model_errors(Role, {"name": "Viewer"}) == []


class TestPropertyKind:
    """Test property kind classification."""

    @pytest.mark.parametrize(
        "definition,kind",
        [
            ({"type": "string"}, PropertyKind.PLAIN),
            ({"type": "string", "is_unique": True}, PropertyKind.UNIQUE),
            ({"type": "reference", "reference_type": "single"}, PropertyKind.REFERENCE),
        ],
    )
    def test_kind(self, definition, kind):
        """Each definition maps to one kind."""
        assert PropertyDefinition.model_validate(definition).kind == kind

    def test_content_type_needs_reference(self):
        """Only references take a content type."""
        with pytest.raises(ValueError):
            PropertyDefinition(type="string", content_type="employee")
