"""Prometheus metric definitions."""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest
from starlette.responses import Response

events_consumed_total = Counter(
    "pulse_notify_events_consumed_total",
    "Domain events handled by the consumer",
    ["outcome"],  # created, duplicate, skipped, suppressed, retry, dead_lettered
)
dead_lettered_total = Counter(
    "pulse_notify_dead_lettered_total",
    "Queue messages moved to the dead-letter stream",
    ["reason"],
)
pushes_total = Counter(
    "pulse_notify_pushes_total",
    "Notification frames written to sockets",
    ["path"],  # backlog, live
)
relay_messages_total = Counter(
    "pulse_notify_relay_messages_total",
    "Relay messages published or received",
    ["direction"],
)
open_connections = Gauge(
    "pulse_notify_open_connections",
    "WebSocket sessions currently held by this instance",
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
