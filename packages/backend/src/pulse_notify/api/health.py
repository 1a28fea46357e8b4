"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running and its
shared dependencies (database, Redis) are reachable. A degraded instance
still serves sockets: Redis down means local-only delivery, database
down means acks and backlog replay are retried.
"""

from fastapi import APIRouter, Request
from sqlalchemy import text

from pulse_notify import __version__

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Check server health and dependency connectivity."""
    runtime = request.app.state.runtime
    checks = {
        "server": "ok",
        "version": __version__,
        "instance_id": runtime.instance_id,
        "connections": runtime.connections.connection_count,
    }

    if runtime.engine is not None:
        try:
            async with runtime.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception as e:
            checks["database"] = f"error: {e}"

    if runtime.redis is not None:
        try:
            await runtime.redis.ping()
            checks["redis"] = "ok"
        except Exception as e:
            checks["redis"] = f"error: {e}"

    if runtime.consumer is not None:
        checks["consumer"] = runtime.consumer.get_stats()

    status = "healthy" if all(
        checks[k] == "ok" for k in ("database", "redis") if k in checks
    ) else "degraded"

    return {"status": status, **checks}
