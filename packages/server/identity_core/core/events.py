"""
Event emission for mutating operations.

Every create/update/delete (and the password flows) builds an ``AuthEvent``
after the store write has completed and hands it to the ``EventEmitter``,
which calls its subscribed handlers in registration order and awaits the
async ones before the operation returns. Delivery to the outside world
(webhooks, mail) is a handler's business; ``RedisEventPublisher`` is the
handler that buffers events per membership and fans them out over Redis
Pub/Sub.
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Optional, Union

import redis.asyncio as redis
import structlog

from identity_core.core.config import Settings, get_settings
from identity_shared.schemas.events import AuthEvent

log = structlog.get_logger()

EventHandler = Callable[[AuthEvent], Union[None, Awaitable[None]]]


class EventEmitter:
    """Ordered list of event handlers, invoked synchronously after a write."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        self._handlers.remove(handler)

    @property
    def handlers(self) -> tuple[EventHandler, ...]:
        return tuple(self._handlers)

    async def fire(self, event: AuthEvent) -> None:
        for handler in list(self._handlers):
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        log.debug(
            "event.fired",
            event_type=event.event_type.value,
            membership_id=event.membership_id,
            handlers=len(self._handlers),
        )


class RedisEventPublisher:
    """Buffer events per membership in Redis and publish them on a channel.

    Without an injected client the publisher connects lazily to
    ``settings.redis_url`` and owns that connection until ``close()``.
    """

    def __init__(self, redis_client: Any = None, settings: Optional[Settings] = None):
        self._redis = redis_client
        self._owns_client = redis_client is None
        self._settings = settings or get_settings()

    def _client(self) -> Any:
        if self._redis is None:
            self._redis = redis.from_url(self._settings.redis_url, decode_responses=True)
        return self._redis

    async def close(self) -> None:
        if self._owns_client and self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def __call__(self, event: AuthEvent) -> None:
        client = self._client()
        event_json = event.model_dump_json()

        # Circular buffer per membership
        buffer_key = f"{self._settings.event_buffer_key_prefix}{event.membership_id}"
        async with client.pipeline() as pipe:
            pipe.lpush(buffer_key, event_json)
            pipe.ltrim(buffer_key, 0, self._settings.event_buffer_size - 1)
            pipe.expire(buffer_key, self._settings.event_buffer_ttl_seconds)
            await pipe.execute()

        await client.publish(self._settings.event_channel, event_json)
        log.debug("event.published", event_type=event.event_type.value, membership_id=event.membership_id)
