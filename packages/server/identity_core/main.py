"""
Identity core assembly and command-line entry point.

``create_core`` wires the services around a document store. The CLI creates
the SQL tables and bootstraps the administrator role of every membership.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Optional

import structlog

from identity_core.core.config import Settings, get_settings
from identity_core.core.database import build_engine, build_session_factory, init_db
from identity_core.core.events import EventEmitter, RedisEventPublisher
from identity_core.core.security import TokenService
from identity_core.services.memberships import MembershipService
from identity_core.services.passwords import CredentialService
from identity_core.services.roles import RoleService
from identity_core.services.user_types import UserTypeService
from identity_core.services.users import UserService
from identity_core.store.base import DocumentStore
from identity_core.store.sql import SqlDocumentStore



def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Route structlog through JSON or console rendering at the given level."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
    )


@dataclass
class IdentityCore:
    store: DocumentStore
    emitter: EventEmitter
    memberships: MembershipService
    user_types: UserTypeService
    roles: RoleService
    users: UserService
    credentials: CredentialService


def create_core(
    store: DocumentStore,
    settings: Optional[Settings] = None,
    emitter: Optional[EventEmitter] = None,
) -> IdentityCore:
    settings = settings or get_settings()
    emitter = emitter or EventEmitter()
    memberships = MembershipService(store, settings)
    user_types = UserTypeService(store, memberships, emitter)
    roles = RoleService(store, memberships, emitter, settings)
    users = UserService(store, memberships, roles, user_types, emitter, settings)
    credentials = CredentialService(memberships, users, emitter, TokenService(settings), settings)
    return IdentityCore(
        store=store,
        emitter=emitter,
        memberships=memberships,
        user_types=user_types,
        roles=roles,
        users=users,
        credentials=credentials,
    )


async def bootstrap(settings: Settings, publish_events: bool = False) -> int:
    log = structlog.get_logger()
    engine = build_engine(settings.database_url)
    publisher = RedisEventPublisher(settings=settings) if publish_events else None
    try:
        await init_db(engine)
        emitter = EventEmitter()
        if publisher is not None:
            emitter.subscribe(publisher)
        core = create_core(SqlDocumentStore(build_session_factory(engine)), settings, emitter)
        created = await core.roles.bootstrap()
        log.info("identity_core.bootstrapped", administrators_created=len(created))
        return len(created)
    finally:
        await engine.dispose()
        if publisher is not None:
            await publisher.close()


def run() -> None:
    """CLI entry point for the identity core."""
    parser = argparse.ArgumentParser(description="Tenant identity core")
    parser.add_argument(
        "command",
        choices=["init-db", "bootstrap"],
        help="init-db creates the tables; bootstrap also ensures an administrator role per membership",
    )
    parser.add_argument("--database-url", default=None, help="Override IDC_DATABASE_URL")
    parser.add_argument(
        "--publish-events",
        action="store_true",
        help="Publish the resulting events to Redis",
    )
    args = parser.parse_args()

    settings = get_settings()
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})
    configure_logging(settings.log_level, settings.log_format)
    log = structlog.get_logger()

    try:
        if args.command == "init-db":
            engine = build_engine(settings.database_url)
            asyncio.run(_init_only(engine))
            log.info("identity_core.tables_created", database_url=settings.database_url)
        else:
            asyncio.run(bootstrap(settings, args.publish_events))
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


async def _init_only(engine) -> None:
    try:
        await init_db(engine)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    run()
