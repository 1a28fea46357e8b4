"""Dispatcher — routes a freshly stored notification to live sockets.

Learn: for each new notification:
1. Local sockets for the recipient → push through the local ConnectionManager
   (the local table is authoritative here, even if our presence entry
   was lost to a Redis blip)
2. Ask the Presence Registry which instances hold the recipient
3. Any instance in the set → publish once on the relay channel; every
   other instance holding a socket pushes it, the rest ignore it
4. Nobody holds a socket → nothing to do; the row stays undelivered and
   is replayed on the recipient's next connect (no polling loop)

Fan-out is at-least-once. It is safe because the row already exists
exactly once and delivered_at is only ever set if currently unset.

When Redis is down we degrade to local-only delivery: whatever this
instance can push it pushes, cross-instance reach waits for the backlog.
"""

from typing import Any, Optional

import structlog
from pydantic import ValidationError

from pulse_notify.errors import RegistryUnavailable
from pulse_notify.metrics import relay_messages_total
from pulse_notify.presence.registry import PresenceRegistry
from pulse_notify.realtime.connections import ConnectionManager
from pulse_notify.schemas.notification import NotificationRead

logger = structlog.get_logger()


class Dispatcher:
    """Bridges consumer output to local sockets and the relay channel."""

    def __init__(
        self,
        *,
        instance_id: str,
        connections: ConnectionManager,
        registry: PresenceRegistry,
    ):
        self.instance_id = instance_id
        self.connections = connections
        self.registry = registry

    async def dispatch(self, notification: NotificationRead) -> str:
        """Route one notification. Never raises; returns the route taken."""
        rid = notification.recipient_id
        local = self.connections.push(rid, notification)
        try:
            instances: Optional[set[str]] = await self.registry.list_instances(rid)
        except RegistryUnavailable as e:
            logger.warning("dispatcher.registry_unavailable", recipient_id=rid, error=str(e))
            instances = None

        if not instances:
            if local:
                return "local_only"
            logger.debug(
                "dispatcher.backlog_only",
                recipient_id=rid,
                notification_id=str(notification.id),
            )
            return "backlog"

        try:
            await self.registry.publish(
                rid,
                {
                    "origin": self.instance_id,
                    "notification": notification.model_dump(mode="json"),
                },
            )
            relay_messages_total.labels(direction="out").inc()
        except RegistryUnavailable as e:
            logger.warning("dispatcher.relay_failed", recipient_id=rid, error=str(e))

        logger.info(
            "dispatcher.dispatched",
            recipient_id=rid,
            notification_id=str(notification.id),
            instances=len(instances),
        )
        return "relayed"

    async def on_relay(self, message: dict[str, Any]) -> int:
        """Handle a relay message from the shared channel.

        Returns the number of local sockets the notification was queued on.
        """
        if message.get("origin") == self.instance_id:
            return 0
        rid = message.get("recipient_id")
        if not rid or not self.connections.has_local(rid):
            return 0
        try:
            notification = NotificationRead.model_validate(message.get("notification"))
        except ValidationError as e:
            logger.warning("dispatcher.relay_invalid", error=str(e))
            return 0

        relay_messages_total.labels(direction="in").inc()
        return self.connections.push(rid, notification)
