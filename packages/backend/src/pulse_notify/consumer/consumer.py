"""Event consumer — Redis Streams consumer group feeding the Notification Store.

Learn: domain events arrive on a Redis stream shared by every instance.
All instances join one consumer group, so each event is handed to one of
them. Delivery is at-least-once; the contract for a single message is:

1. Decode the event (undecodable → dead-letter, it will never succeed)
2. Skip if the dedup index has seen (recipient, event) recently
3. Skip self-actions (liking your own post)
4. Skip types the recipient turned off in their preferences
5. Persist via the Notification Store (failure → leave unacked, retry)
6. Record in the dedup index, then XACK
7. Hand newly created notifications to the Dispatcher

A message is acknowledged only after its row is durable. Anything left
pending (store outage, crashed instance) is picked up by the reclaim
loop with exponential backoff, and moved to the dead-letter stream once
it has been delivered more than max_retry_count times.

Per-recipient ordering: messages are sharded by recipient_id across a
fixed set of worker queues, so one recipient's events are processed in
arrival order. Retries can still reorder them (best-effort).
"""

import asyncio
import json
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError, ResponseError

from pulse_notify.consumer.dedup import DedupIndex
from pulse_notify.dispatcher.dispatcher import Dispatcher
from pulse_notify.errors import PoisonMessage, TransientStoreError
from pulse_notify.metrics import dead_lettered_total, events_consumed_total
from pulse_notify.schemas.event import DomainEvent
from pulse_notify.store.notifications import NotificationStore

logger = structlog.get_logger()

EVENT_FIELD = "event"
RECLAIM_BATCH = 100


@dataclass
class ConsumerConfig:
    """Configuration for the event consumer."""
    stream: str = "pulse:domain-events"
    group: str = "pulse-notify"
    consumer_name: str = "pulse-notify-1"
    dead_letter_stream: str = "pulse:domain-events:dead"
    workers: int = 4
    batch_size: int = 50
    block_ms: int = 2000
    reclaim_interval: float = 5.0
    max_retry_count: int = 5
    backoff_base: float = 1.0  # seconds, first retry delay
    backoff_max: float = 60.0

    @classmethod
    def from_settings(cls, settings) -> "ConsumerConfig":
        return cls(
            stream=settings.event_stream,
            group=settings.consumer_group,
            consumer_name=settings.instance_id,
            dead_letter_stream=settings.dead_letter_stream,
            workers=settings.consumer_workers,
            batch_size=settings.consumer_batch_size,
            block_ms=settings.consumer_block_ms,
            reclaim_interval=settings.reclaim_interval_seconds,
            max_retry_count=settings.max_retry_count,
            backoff_base=settings.retry_backoff_base_seconds,
            backoff_max=settings.retry_backoff_max_seconds,
        )


@dataclass
class ConsumerStats:
    """Runtime statistics for monitoring."""
    created: int = 0
    duplicates: int = 0
    skipped: int = 0
    suppressed: int = 0
    retries: int = 0
    dead_lettered: int = 0
    errors: int = 0
    in_flight: set = field(default_factory=set)
    started_at: Optional[datetime] = None


@dataclass
class StreamMessage:
    """One stream entry on its way through a worker."""
    message_id: str
    fields: dict[str, Any]
    deliveries: int = 1
    event: Optional[DomainEvent] = None
    error: Optional[str] = None


def decode_event(fields: Optional[dict[str, Any]]) -> DomainEvent:
    """Parse a stream entry into a DomainEvent. Raises PoisonMessage."""
    if not fields or EVENT_FIELD not in fields:
        raise PoisonMessage(f"missing '{EVENT_FIELD}' field")
    raw = fields[EVENT_FIELD]
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        return DomainEvent.model_validate_json(raw)
    except ValidationError as e:
        raise PoisonMessage(f"invalid event: {e.error_count()} validation error(s)") from e


async def publish_event(redis: aioredis.Redis, stream: str, event: DomainEvent) -> str:
    """Append a domain event to the stream (used by the CLI and tests)."""
    body = event.model_dump_json(by_alias=True)
    return await redis.xadd(stream, {EVENT_FIELD: body})


class EventConsumer:
    """Consumer group member for the domain event stream.

    Learn: runs three kinds of concurrent tasks:
    1. Reader — XREADGROUP new entries, shard them onto worker queues
    2. Workers — one per shard, process messages in order
    3. Reclaimer — XPENDING/XCLAIM stale entries, dead-letter exhausted ones
    """

    def __init__(
        self,
        config: ConsumerConfig,
        *,
        redis: aioredis.Redis,
        store: NotificationStore,
        dedup: DedupIndex,
        dispatcher: Optional[Dispatcher] = None,
    ):
        self.config = config
        self.redis = redis
        self.store = store
        self.dedup = dedup
        self.dispatcher = dispatcher
        self.stats = ConsumerStats()
        self._queues: list[asyncio.Queue] = []
        self._tasks: list[asyncio.Task] = []
        self._running = False

    # ─── Lifecycle ────────────────────────────────────────

    async def ensure_group(self) -> None:
        """Create the consumer group (and stream) if missing."""
        try:
            await self.redis.xgroup_create(
                self.config.stream, self.config.group, id="0", mkstream=True
            )
            logger.info("consumer.group_created", stream=self.config.stream, group=self.config.group)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def start(self) -> None:
        """Run until stopped or cancelled."""
        while True:
            try:
                await self.ensure_group()
                break
            except (RedisError, OSError) as e:
                logger.warning("consumer.group_unavailable", error=str(e))
                await asyncio.sleep(2)
        self.stats.started_at = datetime.now(timezone.utc)
        self._running = True
        self._queues = [
            asyncio.Queue(maxsize=self.config.batch_size * 2)
            for _ in range(max(1, self.config.workers))
        ]
        self._tasks = [asyncio.create_task(self._worker_loop(q)) for q in self._queues]
        self._tasks.append(asyncio.create_task(self._read_loop()))
        self._tasks.append(asyncio.create_task(self._reclaim_loop()))

        logger.info(
            "consumer.started",
            consumer=self.config.consumer_name,
            workers=len(self._queues),
        )
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop all loops. Unacked messages stay pending for redelivery."""
        if not self._tasks:
            return
        self._running = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("consumer.stopped", **self.get_stats())

    # ─── Reader ───────────────────────────────────────────

    def shard_for(self, message: StreamMessage) -> int:
        if message.event is None:
            return 0
        return zlib.crc32(message.event.recipient_id.encode()) % len(self._queues)

    async def _enqueue(self, message_id: str, fields: Optional[dict], deliveries: int) -> None:
        message = StreamMessage(message_id=message_id, fields=fields or {}, deliveries=deliveries)
        try:
            message.event = decode_event(fields)
        except PoisonMessage as e:
            message.error = str(e)
        self.stats.in_flight.add(message_id)
        await self._queues[self.shard_for(message)].put(message)

    async def _read_loop(self) -> None:
        streams = {self.config.stream: ">"}
        while self._running:
            try:
                response = await self.redis.xreadgroup(
                    self.config.group,
                    self.config.consumer_name,
                    streams,
                    count=self.config.batch_size,
                    block=self.config.block_ms,
                )
                for _stream, entries in response or []:
                    for message_id, fields in entries:
                        await self._enqueue(message_id, fields, deliveries=1)
            except asyncio.CancelledError:
                break
            except (RedisError, OSError) as e:
                logger.warning("consumer.read_failed", error=str(e))
                self.stats.errors += 1
                await asyncio.sleep(1)

    # ─── Workers ──────────────────────────────────────────

    async def _worker_loop(self, queue: asyncio.Queue) -> None:
        while self._running:
            try:
                message = await queue.get()
            except asyncio.CancelledError:
                break
            try:
                await self.process(message)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("consumer.process_crashed", message_id=message.message_id)
                self.stats.errors += 1
            finally:
                self.stats.in_flight.discard(message.message_id)
                queue.task_done()

    async def process(self, message: StreamMessage) -> str:
        """Handle one stream entry. Returns the outcome label."""
        event = message.event
        if event is None:
            await self.dead_letter(message, reason=message.error or "undecodable")
            events_consumed_total.labels(outcome="dead_lettered").inc()
            return "dead_lettered"

        with structlog.contextvars.bound_contextvars(
            event_id=event.event_id,
            recipient_id=event.recipient_id,
            message_id=message.message_id,
        ):
            outcome = await self._process_event(message, event)
        events_consumed_total.labels(outcome=outcome).inc()
        return outcome

    async def _process_event(self, message: StreamMessage, event: DomainEvent) -> str:
        if event.is_self_action:
            await self._ack(message.message_id)
            self.stats.skipped += 1
            return "skipped"

        if await self.dedup.seen(event.recipient_id, event.event_id):
            await self._ack(message.message_id)
            self.stats.duplicates += 1
            logger.debug("consumer.duplicate", source="dedup_index")
            return "duplicate"

        try:
            # Redelivered entries may have been stored before the crash
            if message.deliveries > 1 and await self.store.exists_for_source_event(
                event.recipient_id, event.event_id
            ):
                await self.dedup.mark(event.recipient_id, event.event_id)
                await self._ack(message.message_id)
                self.stats.duplicates += 1
                return "duplicate"
            if not await self._wanted(event):
                await self._ack(message.message_id)
                self.stats.suppressed += 1
                logger.debug("consumer.suppressed", type=event.type)
                return "suppressed"
            notification, created = await self.store.create(event)
        except PoisonMessage as e:
            await self.dead_letter(message, reason=str(e))
            return "dead_lettered"
        except TransientStoreError as e:
            self.stats.retries += 1
            logger.warning(
                "consumer.store_failed",
                error=str(e),
                deliveries=message.deliveries,
            )
            return "retry"

        await self.dedup.mark(event.recipient_id, event.event_id)
        await self._ack(message.message_id)

        if not created:
            self.stats.duplicates += 1
            logger.debug("consumer.duplicate", source="store")
            return "duplicate"

        self.stats.created += 1
        logger.info(
            "consumer.notification_created",
            notification_id=str(notification.id),
            type=notification.type,
        )
        if self.dispatcher is not None:
            await self.dispatcher.dispatch(notification)
        return "created"

    async def _wanted(self, event: DomainEvent) -> bool:
        """Check the recipient's preferences. Fails open when unreadable."""
        try:
            preferences = await self.store.get_preferences(event.recipient_id)
        except TransientStoreError as e:
            logger.warning("consumer.preferences_unavailable", error=str(e))
            return True
        return preferences.allows(event.type)

    async def _ack(self, message_id: str) -> None:
        try:
            await self.redis.xack(self.config.stream, self.config.group, message_id)
        except (RedisError, OSError) as e:
            # Redelivery is absorbed by the dedup index and unique constraint
            logger.warning("consumer.ack_failed", message_id=message_id, error=str(e))

    # ─── Dead-lettering ───────────────────────────────────

    async def dead_letter(self, message: StreamMessage, reason: str) -> None:
        """Move a message to the dead-letter stream, then ack the original.

        If the dead-letter write fails the original stays pending and is
        retried by the reclaim loop, so nothing is silently dropped.
        """
        body = message.fields.get(EVENT_FIELD)
        if body is None:
            body = json.dumps(message.fields, default=str)
        entry = {
            EVENT_FIELD: body,
            "source_id": message.message_id,
            "source_stream": self.config.stream,
            "reason": reason[:500],
            "deliveries": str(message.deliveries),
            "failed_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self.redis.xadd(self.config.dead_letter_stream, entry)
        except (RedisError, OSError) as e:
            logger.warning("consumer.dead_letter_failed", message_id=message.message_id, error=str(e))
            return
        await self._ack(message.message_id)

        self.stats.dead_lettered += 1
        dead_lettered_total.labels(reason=reason.split(":")[0][:40]).inc()
        logger.error(
            "consumer.dead_lettered",
            message_id=message.message_id,
            reason=reason,
            deliveries=message.deliveries,
            alert=True,
        )

    # ─── Reclaim loop ─────────────────────────────────────

    def backoff_seconds(self, deliveries: int) -> float:
        """Delay before the next attempt after `deliveries` attempts."""
        exponent = max(0, deliveries - 1)
        return min(self.config.backoff_base * (2 ** exponent), self.config.backoff_max)

    async def _reclaim_loop(self) -> None:
        """Periodically retry or dead-letter stale pending entries.

        Learn: XPENDING is scanned across *all* consumers in the group, so
        entries held by a crashed instance are recovered by a live one.
        """
        while self._running:
            try:
                await asyncio.sleep(self.config.reclaim_interval)
                if not self._running:
                    break
                await self.reclaim_once()
            except asyncio.CancelledError:
                break
            except (RedisError, OSError) as e:
                logger.warning("consumer.reclaim_failed", error=str(e))
                self.stats.errors += 1

    async def reclaim_once(self) -> int:
        """One reclaim pass. Returns the number of entries claimed."""
        pending = await self.redis.xpending_range(
            self.config.stream,
            self.config.group,
            min="-",
            max="+",
            count=RECLAIM_BATCH,
        )
        claimed_count = 0
        for entry in pending:
            message_id = entry["message_id"]
            if isinstance(message_id, bytes):
                message_id = message_id.decode()
            if message_id in self.stats.in_flight:
                continue

            deliveries = int(entry["times_delivered"])
            min_idle_ms = int(self.backoff_seconds(deliveries) * 1000)
            if int(entry["time_since_delivered"]) < min_idle_ms:
                continue

            # min_idle_time makes the claim lose the race if another
            # instance claimed the entry since we read XPENDING
            claimed = await self.redis.xclaim(
                self.config.stream,
                self.config.group,
                self.config.consumer_name,
                min_idle_time=min_idle_ms,
                message_ids=[message_id],
            )
            for claimed_id, fields in claimed:
                if isinstance(claimed_id, bytes):
                    claimed_id = claimed_id.decode()
                claimed_count += 1
                if not fields:
                    # Entry was trimmed from the stream; nothing left to retry
                    await self._ack(claimed_id)
                    continue
                if deliveries > self.config.max_retry_count:
                    await self.dead_letter(
                        StreamMessage(claimed_id, fields, deliveries=deliveries),
                        reason=f"max retries exceeded ({deliveries} deliveries)",
                    )
                    continue
                await self._enqueue(claimed_id, fields, deliveries=deliveries + 1)
        return claimed_count

    # ─── Stats ────────────────────────────────────────────

    def get_stats(self) -> dict:
        """Return consumer statistics for monitoring."""
        return {
            "created": self.stats.created,
            "duplicates": self.stats.duplicates,
            "skipped": self.stats.skipped,
            "suppressed": self.stats.suppressed,
            "retries": self.stats.retries,
            "dead_lettered": self.stats.dead_lettered,
            "errors": self.stats.errors,
            "in_flight": len(self.stats.in_flight),
            "started_at": (
                self.stats.started_at.isoformat()
                if self.stats.started_at
                else None
            ),
        }
