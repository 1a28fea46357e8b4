"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown of the runtime:
1. Build the Runtime (Redis, database, consumer) unless one was injected
2. Start the relay listener and the event consumer as background tasks
3. On shutdown: stop the consumer, drop presence, close connections

Tests inject a Runtime built from in-memory fakes, so nothing here
connects to Redis or a database unless it built the runtime itself.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pulse_notify import __version__
from pulse_notify.api import api_router
from pulse_notify.config import Settings, settings as default_settings
from pulse_notify.log import configure_logging
from pulse_notify.metrics import metrics_response
from pulse_notify.runtime import Runtime, build_runtime

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at
    shutdown.
    """
    settings: Settings = app.state.settings
    owned = getattr(app.state, "runtime", None) is None
    if owned:
        app.state.runtime = await build_runtime(
            settings, create_tables=settings.environment == "development"
        )
    runtime: Runtime = app.state.runtime

    logger.info(
        "pulse_notify.starting",
        version=__version__,
        environment=settings.environment,
        instance_id=runtime.instance_id,
    )

    background: list[asyncio.Task] = [
        asyncio.create_task(runtime.registry.listen(runtime.dispatcher.on_relay))
    ]
    if runtime.consumer is not None:
        background.append(asyncio.create_task(runtime.consumer.start()))

    yield

    logger.info("pulse_notify.shutdown")
    if runtime.consumer is not None:
        await runtime.consumer.stop()
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)

    await runtime.connections.shutdown()
    if owned:
        await runtime.close()


async def metrics(request):
    """Prometheus scrape endpoint."""
    return metrics_response()


def create_app(
    runtime: Optional[Runtime] = None, settings: Optional[Settings] = None
) -> FastAPI:
    """Build and return the FastAPI application."""
    settings = settings or (runtime.settings if runtime else default_settings)
    configure_logging(settings.log_level, json_logs=settings.json_logs)

    app = FastAPI(
        title="Pulse Notify",
        description="Real-time notification delivery for the Pulse social network",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    if runtime is not None:
        app.state.runtime = runtime

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: RequestId → CORS → handler

    from pulse_notify.middleware.request_id import RequestIdMiddleware

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)

    app.include_router(api_router)
    app.add_route("/metrics", metrics, include_in_schema=False)

    from pulse_notify.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: pulse_notify.main:app)
app = create_app()
