"""Presence Registry — which instances hold live sockets for a recipient.

Learn: sockets never leave the process that accepted them. What instances
share is the *fact* "recipient U has a connection on instance A", stored
in Redis as one sorted set per recipient:

    pulse_notify:presence:{recipient_id}  →  {instance_id: expires_at}

The score is an absolute expiry. Heartbeats push it forward; reads purge
members whose expiry has passed. An instance that crashes simply stops
heartbeating and its entries vanish within one TTL.

Relay uses one shared pub/sub channel with recipient-tagged messages.
Redis pub/sub is fire-and-forget; that's fine because the notification
is already durable and anything missed is replayed from the backlog on
the next connect.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, TypeVar

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from pulse_notify.errors import RegistryUnavailable

logger = structlog.get_logger()

T = TypeVar("T")
RelayHandler = Callable[[dict[str, Any]], Awaitable[None]]

PRESENCE_PREFIX = "pulse_notify:presence:"


class PresenceRegistry(ABC):
    """Cross-instance recipient → instance directory plus relay channel."""

    @abstractmethod
    async def register(self, recipient_id: str, instance_id: str, ttl: int) -> None:
        """Record that instance_id holds a connection for recipient_id."""

    @abstractmethod
    async def heartbeat(self, recipient_id: str, instance_id: str, ttl: int) -> None:
        """Extend the entry; recreates it if it already expired."""

    @abstractmethod
    async def unregister(self, recipient_id: str, instance_id: str) -> None:
        """Drop the entry for this (recipient, instance) pair."""

    @abstractmethod
    async def list_instances(self, recipient_id: str) -> set[str]:
        """Instances with a live (unexpired) entry for recipient_id."""

    @abstractmethod
    async def publish(self, recipient_id: str, message: dict[str, Any]) -> None:
        """Broadcast a recipient-tagged message to every instance."""

    @abstractmethod
    async def listen(self, handler: RelayHandler) -> None:
        """Deliver relay messages to handler until cancelled."""


class RedisPresenceRegistry(PresenceRegistry):
    """PresenceRegistry on Redis sorted sets + pub/sub."""

    def __init__(
        self,
        redis: aioredis.Redis,
        channel: str = "pulse_notify:relay",
        timeout: float = 2.0,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.channel = channel
        self.timeout = timeout
        self.clock = clock

    @staticmethod
    def key(recipient_id: str) -> str:
        return f"{PRESENCE_PREFIX}{recipient_id}"

    async def _call(self, coro: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise RegistryUnavailable("Presence registry timed out") from e
        except (RedisError, OSError) as e:
            raise RegistryUnavailable(f"Presence registry error: {e}") from e

    # ─── Directory ────────────────────────────────────────

    async def register(self, recipient_id: str, instance_id: str, ttl: int) -> None:
        await self._call(self._touch(recipient_id, instance_id, ttl))

    async def heartbeat(self, recipient_id: str, instance_id: str, ttl: int) -> None:
        await self._call(self._touch(recipient_id, instance_id, ttl))

    async def _touch(self, recipient_id: str, instance_id: str, ttl: int) -> None:
        key = self.key(recipient_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {instance_id: self.clock() + ttl})
            # Key expires together with its newest member.
            pipe.expire(key, ttl)
            await pipe.execute()

    async def unregister(self, recipient_id: str, instance_id: str) -> None:
        await self._call(self.redis.zrem(self.key(recipient_id), instance_id))

    async def list_instances(self, recipient_id: str) -> set[str]:
        return await self._call(self._live_members(recipient_id))

    async def _live_members(self, recipient_id: str) -> set[str]:
        key = self.key(recipient_id)
        now = self.clock()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, "-inf", now)
            pipe.zrangebyscore(key, now, "+inf")
            _, members = await pipe.execute()
        return {m.decode() if isinstance(m, bytes) else m for m in members}

    # ─── Relay ────────────────────────────────────────────

    async def publish(self, recipient_id: str, message: dict[str, Any]) -> None:
        payload = json.dumps({"recipient_id": recipient_id, **message}, default=str)
        await self._call(self.redis.publish(self.channel, payload))

    async def listen(self, handler: RelayHandler) -> None:
        """Subscribe to the relay channel, reconnecting after Redis failures.

        Learn: a bad message or a failing handler is logged and skipped;
        one broken relay must not stop the instance receiving the rest.
        """
        while True:
            pubsub = self.redis.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                logger.info("presence.relay_subscribed", channel=self.channel)
                async for message in pubsub.listen():
                    if message["type"] != "message":
                        continue
                    await self._deliver(message["data"], handler)
            except asyncio.CancelledError:
                raise
            except (RedisError, OSError) as e:
                logger.warning("presence.relay_disconnected", error=str(e))
                await asyncio.sleep(1)
            finally:
                try:
                    await pubsub.unsubscribe(self.channel)
                    await pubsub.aclose()
                except (RedisError, OSError):
                    pass

    async def _deliver(self, raw: Any, handler: RelayHandler) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("presence.relay_malformed", data=str(raw)[:200])
            return
        try:
            await handler(data)
        except Exception:
            logger.exception("presence.relay_handler_error")
