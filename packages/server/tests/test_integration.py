"""
End-to-end tests against the SQL document store (SQLite through aiosqlite).

Exercises the full service stack on the SQL adapter and the bootstrap
command the CLI runs.
"""

from __future__ import annotations

import pytest

from conftest import M1, SECRET, user_payload
from identity_core.core.database import build_engine, build_session_factory, init_db
from identity_core.core.exceptions import AlreadyExistsError, ValidationFailedError
from identity_core.core.events import EventEmitter
from identity_core.main import bootstrap, create_core
from identity_core.store.sql import SqlDocumentStore
from identity_shared.schemas.events import EventType


async def _seed_memberships(store: SqlDocumentStore) -> None:
    await store.insert("memberships", {"_id": M1, "name": "Acme", "secret_key": SECRET, "hash_algorithm": "SHA2-256"})
    await store.insert("memberships", {"_id": "m2", "name": "Globex", "secret_key": SECRET, "hash_algorithm": "MD5"})


@pytest.fixture
async def sql_core(tmp_path, settings, events):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'identity.db'}", echo=False)
    await init_db(engine)
    store = SqlDocumentStore(build_session_factory(engine))
    await _seed_memberships(store)
    emitter = EventEmitter()
    emitter.subscribe(events.append)
    yield create_core(store, settings, emitter)
    await engine.dispose()


class TestSqlBackedCore:
    """Test the core against a SQLite document store."""

    async def test_user_lifecycle(self, sql_core, admin, events):
        """Users can be created, read, updated and deleted."""
        user = await sql_core.users.create(admin, M1, user_payload())
        assert await sql_core.users.get(M1, user["_id"]) == user

        updated = await sql_core.users.update(admin, M1, user["_id"], {"lastname": "Roe"})
        assert updated["lastname"] == "Roe"

        assert await sql_core.users.delete(admin, M1, user["_id"])
        assert [e.event_type for e in events] == [
            EventType.USER_CREATED,
            EventType.USER_UPDATED,
            EventType.USER_DELETED,
        ]

    async def test_unique_values(self, sql_core, admin):
        """Unique properties are enforced by the SQL store."""
        await sql_core.users.create(admin, M1, user_payload())
        with pytest.raises(AlreadyExistsError):
            await sql_core.users.create(admin, M1, user_payload(username="other"))

    async def test_roles_and_search(self, sql_core, admin):
        """Roles are searchable in the SQL store."""
        await sql_core.roles.create(admin, M1, {"name": "Editor", "permissions": ["blog.posts.*"]})
        await sql_core.users.create(admin, M1, user_payload(role="editor"))
        page = await sql_core.users.search(M1, "jdoe", with_count=True)
        assert page.count == 1
        with pytest.raises(ValidationFailedError):
            await sql_core.users.create(
                admin, M1, user_payload(username="x", email_address="x@example.com", role="ghost")
            )

    async def test_password_reset_round_trip(self, sql_core, admin):
        """A reset token can be used to set a new password."""
        await sql_core.users.create(admin, M1, user_payload())
        token = await sql_core.credentials.reset_password(admin, M1, "jdoe")
        result = await sql_core.credentials.set_password(admin, M1, token.reset_token, "jdoe", "brand-new")
        assert result["username"] == "jdoe"


class TestBootstrap:
    """Test the bootstrap command."""

    async def test_bootstrap_creates_administrators_once(self, tmp_path, settings):
        """Bootstrap stores one administrator role per membership."""
        url = f"sqlite+aiosqlite:///{tmp_path / 'bootstrap.db'}"
        engine = build_engine(url, echo=False)
        await init_db(engine)
        await _seed_memberships(SqlDocumentStore(build_session_factory(engine)))
        await engine.dispose()

        settings = settings.model_copy(update={"database_url": url})
        assert await bootstrap(settings) == 2
        assert await bootstrap(settings) == 0
