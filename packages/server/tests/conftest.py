"""
Shared fixtures: an in-memory document store seeded with two memberships and
the identity core wired around it.
"""

from __future__ import annotations

import pytest

from identity_core.core.config import Settings
from identity_core.core.events import EventEmitter
from identity_core.main import create_core
from identity_core.store.memory import MemoryDocumentStore
from identity_shared.schemas.identity import HumanUtilizer, SystemUtilizer

M1 = "m1"
M2 = "m2"
SECRET = "test-membership-secret-key-long-enough-for-hs256"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        cipher_iterations=1000,
        bcrypt_rounds=4,
        reset_password_host="auth.example.com",
    )


@pytest.fixture
async def store() -> MemoryDocumentStore:
    store = MemoryDocumentStore()
    await store.insert(
        "memberships",
        {"_id": M1, "name": "Acme", "secret_key": SECRET, "hash_algorithm": "SHA2-256"},
    )
    await store.insert(
        "memberships",
        {"_id": M2, "name": "Globex", "secret_key": SECRET + "-2", "hash_algorithm": "MD5"},
    )
    return store


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def core(store, settings, events):
    emitter = EventEmitter()
    emitter.subscribe(events.append)
    return create_core(store, settings, emitter)


@pytest.fixture
def system() -> SystemUtilizer:
    return SystemUtilizer(membership_id=M1)


@pytest.fixture
def admin() -> HumanUtilizer:
    return HumanUtilizer(id="admin-1", role="administrator", membership_id=M1, username="admin")


def user_payload(**overrides) -> dict:
    payload = {
        "username": "jdoe",
        "email_address": "jdoe@example.com",
        "firstname": "John",
        "lastname": "Doe",
        "role": "administrator",
        "password": "abcdef",
    }
    payload.update(overrides)
    return payload
