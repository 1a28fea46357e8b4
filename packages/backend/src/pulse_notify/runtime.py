"""Runtime — the wired-together components of one service instance.

Learn: nothing in the delivery core is a module-level singleton. The app
lifespan builds one Runtime (real Redis + database), tests build one from
in-memory fakes, and every route or socket handler reaches it through
app.state.runtime.
"""

from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncEngine

from pulse_notify.auth.jwt import TokenValidator
from pulse_notify.config import Settings
from pulse_notify.consumer.consumer import ConsumerConfig, EventConsumer
from pulse_notify.consumer.dedup import DedupIndex
from pulse_notify.db.engine import build_engine, build_session_factory, create_schema
from pulse_notify.dispatcher.dispatcher import Dispatcher
from pulse_notify.presence.registry import PresenceRegistry, RedisPresenceRegistry
from pulse_notify.realtime.connections import ConnectionManager
from pulse_notify.store.notifications import NotificationStore, SqlNotificationStore

logger = structlog.get_logger()


@dataclass
class Runtime:
    """Everything a running instance needs, owned by the app lifespan."""

    settings: Settings
    validator: TokenValidator
    store: NotificationStore
    registry: PresenceRegistry
    connections: ConnectionManager
    dispatcher: Dispatcher
    consumer: Optional[EventConsumer] = None
    redis: Optional[aioredis.Redis] = None
    engine: Optional[AsyncEngine] = None

    @property
    def instance_id(self) -> str:
        return self.settings.instance_id

    async def close(self) -> None:
        """Release Redis and database connections."""
        if self.redis is not None:
            await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def assemble(
    settings: Settings,
    *,
    store: NotificationStore,
    registry: PresenceRegistry,
    validator: Optional[TokenValidator] = None,
) -> Runtime:
    """Wire the connection manager and dispatcher around a store and registry."""
    validator = validator or TokenValidator(
        key=settings.jwt_verification_key,
        algorithm=settings.jwt_algorithm,
        leeway_seconds=settings.clock_skew_seconds,
    )
    connections = ConnectionManager(
        instance_id=settings.instance_id,
        validator=validator,
        store=store,
        registry=registry,
        presence_ttl=settings.presence_ttl_seconds,
        heartbeat_interval=settings.heartbeat_interval_seconds,
        idle_timeout=settings.idle_timeout_seconds,
        revalidate_interval=settings.revalidate_interval_seconds,
        handshake_timeout=settings.auth_handshake_timeout_seconds,
    )
    dispatcher = Dispatcher(
        instance_id=settings.instance_id,
        connections=connections,
        registry=registry,
    )
    return Runtime(
        settings=settings,
        validator=validator,
        store=store,
        registry=registry,
        connections=connections,
        dispatcher=dispatcher,
    )


async def build_runtime(settings: Settings, *, create_tables: bool = False) -> Runtime:
    """Connect to Redis and the database and build the full runtime."""
    engine = build_engine(settings.database_url, echo=settings.debug)
    if create_tables:
        await create_schema(engine)

    redis = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Redis being down at startup is not fatal; presence degrades to
    # local-only delivery until it returns.
    try:
        await redis.ping()
    except (RedisError, OSError) as e:
        logger.warning("runtime.redis_unavailable", url=settings.redis_url, error=str(e))

    store = SqlNotificationStore(
        build_session_factory(engine), timeout=settings.store_timeout_seconds
    )
    registry = RedisPresenceRegistry(
        redis,
        channel=settings.relay_channel,
        timeout=settings.registry_timeout_seconds,
    )
    runtime = assemble(settings, store=store, registry=registry)
    runtime.redis = redis
    runtime.engine = engine
    runtime.consumer = EventConsumer(
        ConsumerConfig.from_settings(settings),
        redis=redis,
        store=store,
        dedup=DedupIndex(
            redis,
            window_seconds=settings.dedup_window_seconds,
            timeout=settings.registry_timeout_seconds,
        ),
        dispatcher=runtime.dispatcher,
    )
    return runtime
