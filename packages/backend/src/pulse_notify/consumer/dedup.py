"""Dedup index — recently processed (recipient, event) pairs.

Learn: a cheap first line of defence against queue redelivery. Keys live
for the dedup window and are written only *after* the notification row
is committed, so a failed write is never mistaken for a processed event.

The index is best-effort: if Redis is unreachable we report "not seen"
and let the store's unique constraint reject the duplicate instead.
"""

import asyncio

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger()

DEDUP_PREFIX = "pulse_notify:dedup:"


class DedupIndex:
    """Redis SET NX EX keyed by (recipient_id, event_id)."""

    def __init__(self, redis: aioredis.Redis, window_seconds: int = 86400, timeout: float = 2.0):
        self.redis = redis
        self.window_seconds = window_seconds
        self.timeout = timeout

    @staticmethod
    def key(recipient_id: str, event_id: str) -> str:
        return f"{DEDUP_PREFIX}{recipient_id}:{event_id}"

    async def seen(self, recipient_id: str, event_id: str) -> bool:
        try:
            found = await asyncio.wait_for(
                self.redis.exists(self.key(recipient_id, event_id)), timeout=self.timeout
            )
        except (asyncio.TimeoutError, RedisError, OSError) as e:
            logger.warning("dedup.lookup_failed", error=str(e))
            return False
        return bool(found)

    async def mark(self, recipient_id: str, event_id: str) -> None:
        try:
            await asyncio.wait_for(
                self.redis.set(
                    self.key(recipient_id, event_id), "1", nx=True, ex=self.window_seconds
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, RedisError, OSError) as e:
            logger.warning("dedup.mark_failed", error=str(e))
