"""Event consumer tests — ack discipline, dedup, retries and dead-letters.

Learn: Redis is an AsyncMock, so we can assert exactly which stream
commands were issued and in what order. The store is the in-memory fake,
and the dispatcher an AsyncMock we check for (non-)calls.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from fakes import InMemoryNotificationStore, make_event, wait_until
from pulse_notify.consumer.consumer import (
    ConsumerConfig,
    EventConsumer,
    StreamMessage,
    decode_event,
    publish_event,
)
from pulse_notify.consumer.dedup import DedupIndex
from pulse_notify.errors import PoisonMessage, TransientStoreError
from pulse_notify.schemas.preferences import PreferencesUpdate

STREAM = "pulse:domain-events"
DEAD = "pulse:domain-events:dead"


def make_redis():
    redis = AsyncMock()
    redis.exists.return_value = 0
    redis.set.return_value = True
    redis.xack.return_value = 1
    redis.xadd.return_value = "99-0"
    redis.xpending_range.return_value = []
    return redis


def make_consumer(redis=None, store=None, dispatcher=None, **config):
    redis = redis or make_redis()
    store = store or InMemoryNotificationStore()
    dispatcher = dispatcher or AsyncMock()
    consumer = EventConsumer(
        ConsumerConfig(consumer_name="instance-a", **config),
        redis=redis,
        store=store,
        dedup=DedupIndex(redis, window_seconds=600),
        dispatcher=dispatcher,
    )
    return consumer, redis, store, dispatcher


def message_for(event, message_id="1-0", deliveries=1) -> StreamMessage:
    fields = {"event": event.model_dump_json(by_alias=True)}
    return StreamMessage(message_id, fields, deliveries=deliveries, event=decode_event(fields))


def command_names(redis) -> list[str]:
    return [name for name, _, _ in redis.mock_calls]


# ═══════════════════════════════════════════════════════════
# Decoding
# ═══════════════════════════════════════════════════════════


def test_decode_round_trips_published_body():
    event = make_event("u1", "comment", event_id="evt-1")
    decoded = decode_event({"event": event.model_dump_json(by_alias=True)})
    assert decoded == event


@pytest.mark.parametrize("fields", [
    None,
    {},
    {"other": "x"},
    {"event": "{not json"},
    {"event": json.dumps({"type": "like"})},
])
def test_undecodable_messages_are_poison(fields):
    with pytest.raises(PoisonMessage):
        decode_event(fields)


@pytest.mark.asyncio
async def test_publish_event_appends_to_stream():
    redis = make_redis()
    event = make_event("u1")
    await publish_event(redis, STREAM, event)

    stream, fields = redis.xadd.await_args.args
    assert stream == STREAM
    assert decode_event(fields) == event


# ═══════════════════════════════════════════════════════════
# Processing
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_new_event_stored_then_acked_then_dispatched():
    consumer, redis, store, dispatcher = make_consumer()
    event = make_event("u1", event_id="evt-1")

    outcome = await consumer.process(message_for(event))

    assert outcome == "created"
    (notification,) = store.rows.values()
    assert notification.source_event_id == "evt-1"
    # dedup lookup, dedup write after the store write, then ack
    assert command_names(redis) == ["exists", "set", "xack"]
    redis.set.assert_awaited_once_with(
        "pulse_notify:dedup:u1:evt-1", "1", nx=True, ex=600
    )
    redis.xack.assert_awaited_once_with(STREAM, "pulse-notify", "1-0")
    dispatcher.dispatch.assert_awaited_once_with(notification)


@pytest.mark.asyncio
async def test_dedup_hit_acks_without_store_write():
    consumer, redis, store, dispatcher = make_consumer()
    redis.exists.return_value = 1

    outcome = await consumer.process(message_for(make_event("u1")))

    assert outcome == "duplicate"
    assert store.calls == []
    redis.xack.assert_awaited_once()
    dispatcher.dispatch.assert_not_awaited()


@pytest.mark.asyncio
async def test_store_duplicate_acks_without_dispatch():
    """Dedup index lost (Redis flushed) — the unique constraint still holds."""
    consumer, redis, store, dispatcher = make_consumer()
    event = make_event("u1", event_id="evt-1")
    await store.create(event)

    outcome = await consumer.process(message_for(event))

    assert outcome == "duplicate"
    assert len(store.rows) == 1
    redis.xack.assert_awaited_once()
    dispatcher.dispatch.assert_not_awaited()


@pytest.mark.asyncio
async def test_redelivery_checks_store_first():
    consumer, redis, store, dispatcher = make_consumer()
    event = make_event("u1", event_id="evt-1")
    await store.create(event)
    store.calls.clear()

    outcome = await consumer.process(message_for(event, deliveries=2))

    assert outcome == "duplicate"
    assert store.calls == ["exists_for_source_event"]
    redis.set.assert_awaited_once()
    redis.xack.assert_awaited_once()


@pytest.mark.asyncio
async def test_self_action_skipped():
    consumer, redis, store, dispatcher = make_consumer()

    outcome = await consumer.process(message_for(make_event("u1", actor_id="u1")))

    assert outcome == "skipped"
    assert store.rows == {}
    redis.xack.assert_awaited_once()
    dispatcher.dispatch.assert_not_awaited()


@pytest.mark.asyncio
async def test_muted_type_acked_without_notification():
    consumer, redis, store, dispatcher = make_consumer()
    await store.update_preferences("u1", PreferencesUpdate(types={"like": False}))

    outcome = await consumer.process(message_for(make_event("u1", "like")))

    assert outcome == "suppressed"
    assert store.rows == {}
    assert command_names(redis) == ["exists", "xack"]
    dispatcher.dispatch.assert_not_awaited()
    assert consumer.stats.suppressed == 1


@pytest.mark.asyncio
async def test_other_types_still_delivered_when_one_is_muted():
    consumer, redis, store, dispatcher = make_consumer()
    await store.update_preferences("u1", PreferencesUpdate(types={"like": False}))

    outcome = await consumer.process(message_for(make_event("u1", "comment")))

    assert outcome == "created"
    dispatcher.dispatch.assert_awaited_once()


@pytest.mark.asyncio
async def test_in_app_channel_off_suppresses_every_type():
    consumer, redis, store, dispatcher = make_consumer()
    await store.update_preferences("u1", PreferencesUpdate(in_app_enabled=False))

    outcome = await consumer.process(message_for(make_event("u1", "follow")))

    assert outcome == "suppressed"
    assert store.rows == {}


@pytest.mark.asyncio
async def test_preferences_outage_still_creates():
    consumer, redis, store, dispatcher = make_consumer()
    store.get_preferences = AsyncMock(side_effect=TransientStoreError("db down"))

    outcome = await consumer.process(message_for(make_event("u1")))

    assert outcome == "created"
    assert len(store.rows) == 1
    dispatcher.dispatch.assert_awaited_once()


@pytest.mark.asyncio
async def test_store_failure_leaves_message_unacked():
    consumer, redis, store, dispatcher = make_consumer()
    store.fail = True

    outcome = await consumer.process(message_for(make_event("u1")))

    assert outcome == "retry"
    redis.xack.assert_not_awaited()
    redis.set.assert_not_awaited()
    dispatcher.dispatch.assert_not_awaited()
    assert consumer.stats.retries == 1


@pytest.mark.asyncio
async def test_dedup_outage_falls_back_to_store():
    consumer, redis, store, dispatcher = make_consumer()
    redis.exists.side_effect = ConnectionError("redis down")
    redis.set.side_effect = ConnectionError("redis down")

    assert await consumer.process(message_for(make_event("u1", event_id="e"))) == "created"


@pytest.mark.asyncio
async def test_ack_failure_is_not_fatal():
    consumer, redis, store, dispatcher = make_consumer()
    redis.xack.side_effect = OSError("connection reset")

    assert await consumer.process(message_for(make_event("u1"))) == "created"
    dispatcher.dispatch.assert_awaited_once()


# ═══════════════════════════════════════════════════════════
# Dead-lettering
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_undecodable_message_dead_lettered():
    consumer, redis, store, _ = make_consumer()
    message = StreamMessage("7-0", {"event": "{broken"}, error="invalid event")

    assert await consumer.process(message) == "dead_lettered"

    stream, entry = redis.xadd.await_args.args
    assert stream == DEAD
    assert entry["event"] == "{broken"
    assert entry["source_id"] == "7-0"
    assert entry["reason"] == "invalid event"
    redis.xack.assert_awaited_once_with(STREAM, "pulse-notify", "7-0")
    assert store.calls == []


@pytest.mark.asyncio
async def test_unknown_type_dead_lettered():
    consumer, redis, store, dispatcher = make_consumer()

    outcome = await consumer.process(message_for(make_event("u1", "birthday")))

    assert outcome == "dead_lettered"
    assert "birthday" in redis.xadd.await_args.args[1]["reason"]
    redis.xack.assert_awaited_once()
    dispatcher.dispatch.assert_not_awaited()


@pytest.mark.parametrize("key,value", [
    ("eventId", "e" * 129),
    ("recipientId", "u" * 65),
    ("actorId", "a" * 65),
    ("type", "t" * 33),
])
@pytest.mark.asyncio
async def test_oversized_fields_dead_lettered_on_first_delivery(key, value):
    """Values too long for the table never reach the store."""
    body = {"eventId": "evt-1", "type": "like", "recipientId": "u1", "actorId": "u2"}
    body[key] = value
    fields = {"event": json.dumps(body)}
    with pytest.raises(PoisonMessage) as exc:
        decode_event(fields)

    consumer, redis, store, _ = make_consumer()
    outcome = await consumer.process(StreamMessage("8-0", fields, error=str(exc.value)))

    assert outcome == "dead_lettered"
    assert store.calls == []
    assert redis.xadd.await_args.args[0] == DEAD
    redis.xack.assert_awaited_once_with(STREAM, "pulse-notify", "8-0")


@pytest.mark.asyncio
async def test_dead_letter_write_failure_keeps_message_pending():
    consumer, redis, _, _ = make_consumer()
    redis.xadd.side_effect = OSError("redis down")

    await consumer.process(StreamMessage("7-0", {}, error="missing 'event' field"))

    redis.xack.assert_not_awaited()
    assert consumer.stats.dead_lettered == 0


# ═══════════════════════════════════════════════════════════
# Reclaim / backoff
# ═══════════════════════════════════════════════════════════


def test_backoff_is_exponential_and_capped():
    consumer, *_ = make_consumer(backoff_base=1.0, backoff_max=60.0)
    assert [consumer.backoff_seconds(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]
    assert consumer.backoff_seconds(10) == 60.0


def pending(message_id, deliveries, idle_ms):
    return {
        "message_id": message_id,
        "consumer": "instance-dead",
        "time_since_delivered": idle_ms,
        "times_delivered": deliveries,
    }


@pytest.mark.asyncio
async def test_reclaim_requeues_after_backoff():
    consumer, redis, _, _ = make_consumer()
    consumer._queues = [asyncio.Queue()]
    event = make_event("u1")
    redis.xpending_range.return_value = [
        pending("1-0", deliveries=2, idle_ms=5_000),   # backoff 2s elapsed
        pending("2-0", deliveries=3, idle_ms=1_000),   # backoff 4s not yet
    ]
    redis.xclaim.return_value = [("1-0", {"event": event.model_dump_json(by_alias=True)})]

    assert await consumer.reclaim_once() == 1

    redis.xclaim.assert_awaited_once_with(
        STREAM, "pulse-notify", "instance-a", min_idle_time=2000, message_ids=["1-0"]
    )
    queued = consumer._queues[0].get_nowait()
    assert queued.message_id == "1-0"
    assert queued.deliveries == 3
    assert queued.event == event
    assert "1-0" in consumer.stats.in_flight


@pytest.mark.asyncio
async def test_reclaim_skips_locally_in_flight():
    consumer, redis, _, _ = make_consumer()
    consumer._queues = [asyncio.Queue()]
    consumer.stats.in_flight.add("1-0")
    redis.xpending_range.return_value = [pending("1-0", deliveries=1, idle_ms=60_000)]

    assert await consumer.reclaim_once() == 0
    redis.xclaim.assert_not_awaited()


@pytest.mark.asyncio
async def test_reclaim_dead_letters_after_max_retries():
    consumer, redis, _, _ = make_consumer(max_retry_count=5)
    consumer._queues = [asyncio.Queue()]
    body = make_event("u1").model_dump_json(by_alias=True)
    redis.xpending_range.return_value = [pending("1-0", deliveries=6, idle_ms=120_000)]
    redis.xclaim.return_value = [("1-0", {"event": body})]

    await consumer.reclaim_once()

    stream, entry = redis.xadd.await_args.args
    assert stream == DEAD
    assert entry["event"] == body
    assert entry["deliveries"] == "6"
    redis.xack.assert_awaited_once_with(STREAM, "pulse-notify", "1-0")
    assert consumer._queues[0].empty()


@pytest.mark.asyncio
async def test_reclaim_acks_trimmed_entries():
    consumer, redis, _, _ = make_consumer()
    consumer._queues = [asyncio.Queue()]
    redis.xpending_range.return_value = [pending("1-0", deliveries=1, idle_ms=60_000)]
    redis.xclaim.return_value = [("1-0", None)]

    await consumer.reclaim_once()

    redis.xack.assert_awaited_once()
    assert consumer._queues[0].empty()


# ═══════════════════════════════════════════════════════════
# Run loop
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_start_consumes_stream_until_stopped():
    store = InMemoryNotificationStore()
    consumer, redis, _, dispatcher = make_consumer(
        store=store, workers=2, reclaim_interval=0.01
    )
    events = [make_event("u1", event_id="a"), make_event("u2", event_id="b", actor_id="u3")]
    batch = [[STREAM, [
        (f"{i}-0", {"event": e.model_dump_json(by_alias=True)}) for i, e in enumerate(events)
    ]]]
    calls = 0

    async def xreadgroup(*args, **kwargs):
        nonlocal calls
        calls += 1
        if calls == 1:
            return batch
        await asyncio.sleep(0.01)
        return []

    redis.xreadgroup.side_effect = xreadgroup

    task = asyncio.create_task(consumer.start())
    await wait_until(lambda: len(store.rows) == 2)
    await wait_until(lambda: dispatcher.dispatch.await_count == 2)
    await consumer.stop()
    await asyncio.gather(task, return_exceptions=True)

    redis.xgroup_create.assert_awaited_once_with(STREAM, "pulse-notify", id="0", mkstream=True)
    assert consumer.get_stats()["created"] == 2
    assert consumer.get_stats()["in_flight"] == 0


@pytest.mark.asyncio
async def test_existing_group_is_reused():
    from redis.exceptions import ResponseError

    consumer, redis, _, _ = make_consumer()
    redis.xgroup_create.side_effect = ResponseError(
        "BUSYGROUP Consumer Group name already exists"
    )
    await consumer.ensure_group()


def test_same_recipient_same_shard():
    consumer, *_ = make_consumer(workers=4)
    consumer._queues = [asyncio.Queue() for _ in range(4)]
    shards = {
        consumer.shard_for(message_for(make_event("u1", event_id=str(i))))
        for i in range(20)
    }
    assert len(shards) == 1
