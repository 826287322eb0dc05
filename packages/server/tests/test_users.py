"""
Tests for user documents: password policy, hashing, source provider
and role checks.
"""

from __future__ import annotations

import hashlib

import pytest

from conftest import M1, M2, user_payload
from identity_core.core.exceptions import (
    AlreadyExistsError,
    PasswordRequiredError,
    PasswordTooShortError,
    UserTypeRequiredError,
    ValidationFailedError,
)
from identity_core.services.users import resolve_source_provider
from identity_shared.schemas.common import SourceProvider


class TestPasswordPolicy:
    """Test password rules on user creation."""

    async def test_too_short(self, core, admin):
        """A short password is rejected."""
        with pytest.raises(PasswordTooShortError) as exc_info:
            await core.users.create(admin, M1, user_payload(password="ab"))
        assert isinstance(exc_info.value, ValidationFailedError)
        assert await core.users.count(M1) == 0

    async def test_missing(self, core, admin):
        """A local user needs a password."""
        payload = user_payload()
        payload.pop("password")
        with pytest.raises(PasswordRequiredError):
            await core.users.create(admin, M1, payload)

    async def test_blank(self, core, admin):
        """A blank password counts as missing."""
        with pytest.raises(PasswordRequiredError):
            await core.users.create(admin, M1, user_payload(password="   "))

    async def test_hash_is_stored_but_never_returned(self, core, admin):
        """The password hash is stored and hidden from results."""
        user = await core.users.create(admin, M1, user_payload(password="abcdef"))
        assert "password_hash" not in user
        assert "password" not in user
        raw = await core.users.get_raw(M1, user["_id"])
        assert raw["password_hash"] == hashlib.sha256(b"abcdef").hexdigest()

    async def test_membership_algorithm_is_used(self, core, admin):
        """The hash follows the membership algorithm."""
        other_admin = admin.model_copy(update={"membership_id": M2})
        user = await core.users.create(other_admin, M2, user_payload(password="abcdef"))
        raw = await core.users.get_raw(M2, user["_id"])
        assert raw["password_hash"] == hashlib.md5(b"abcdef").hexdigest()


class TestRole:
    """Test role references on users."""

    async def test_unknown_role(self, core, admin):
        """A role missing from the membership is rejected."""
        with pytest.raises(ValidationFailedError) as exc_info:
            await core.users.create(admin, M1, user_payload(role="ghost"))
        assert {e.field: e.code for e in exc_info.value.errors} == {"role": "not_found"}

    async def test_custom_role(self, core, admin):
        """A stored role can be assigned."""
        await core.roles.create(admin, M1, {"name": "Editor", "permissions": ["blog.posts.*"]})
        user = await core.users.create(admin, M1, user_payload(role="editor"))
        assert user["role"] == "editor"

    async def test_role_is_required(self, core, admin):
        """The origin user type requires a role."""
        payload = user_payload()
        payload.pop("role")
        with pytest.raises(ValidationFailedError) as exc_info:
            await core.users.create(admin, M1, payload)
        assert {e.field: e.code for e in exc_info.value.errors}["role"] == "required"


class TestSourceProvider:
    """Test local and external users."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, SourceProvider.LOCAL),
            ("Google", SourceProvider.GOOGLE),
            ("microsoft", SourceProvider.MICROSOFT),
            ("myspace", SourceProvider.LOCAL),
        ],
    )
    def test_resolve(self, value, expected):
        """Provider tags are parsed case-insensitively and unknown ones mean local."""
        assert resolve_source_provider(value) == expected

    async def test_unknown_provider_is_local(self, core, admin):
        """An unknown provider falls back to local."""
        user = await core.users.create(admin, M1, user_payload(sourceProvider="myspace"))
        assert user["sourceProvider"] == "local"
        assert user["user_type"] == "base-user"

    async def test_external_user_needs_a_type(self, core, admin):
        """An external user must name its user type."""
        payload = user_payload(sourceProvider="google")
        payload.pop("password")
        with pytest.raises(UserTypeRequiredError):
            await core.users.create(admin, M1, payload)

    async def test_external_user_needs_no_password(self, core, admin):
        """An external user is created without a password."""
        payload = user_payload(sourceProvider="google", user_type="base-user")
        payload.pop("password")
        user = await core.users.create(admin, M1, payload)
        raw = await core.users.get_raw(M1, user["_id"])
        assert raw["sourceProvider"] == "google"
        assert "password_hash" not in raw


class TestLookups:
    """Test user lookups."""

    async def test_find_by_username_or_email(self, core, admin):
        """A user is found by username or email."""
        user = await core.users.create(admin, M1, user_payload())
        by_name = await core.users.find_by_username_or_email(M1, "jdoe")
        by_email = await core.users.find_by_username_or_email(M1, "jdoe@example.com")
        assert by_name["_id"] == by_email["_id"] == user["_id"]
        assert await core.users.find_by_username_or_email(M2, "jdoe") is None
        assert await core.users.find_by_username_or_email(M1, "") is None

    async def test_duplicate_username(self, core, admin):
        """Usernames are unique within a membership."""
        await core.users.create(admin, M1, user_payload())
        with pytest.raises(AlreadyExistsError) as exc_info:
            await core.users.create(admin, M1, user_payload(email_address="other@example.com"))
        assert [e.field for e in exc_info.value.errors] == ["username"]
