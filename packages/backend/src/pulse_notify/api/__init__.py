"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: the health router is open; notification routes resolve the caller
through the get_current_recipient dependency on each handler, since they
need the recipient id and not just a yes/no auth check.
"""

from fastapi import APIRouter

from pulse_notify.api.health import router as health_router
from pulse_notify.api.notifications import router as notifications_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(notifications_router, tags=["notifications"])
