"""Pydantic schemas for notifications and WebSocket frames.

Learn: NotificationRead is the one shape a notification has outside the
database — returned by the API, pushed over sockets, and relayed between
instances through the pub/sub channel.

Frames:
- server → client: notification, ping, pong, error
- client → server: auth (first-frame handshake), ack, ping, pong
"""

import uuid
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


# ─── Read (platform → client) ───────────────────────────


class NotificationRead(BaseModel):
    """Full notification with delivery state."""
    id: uuid.UUID
    recipient_id: str
    actor_id: Optional[str] = None
    type: str
    title: str
    message: str
    priority: str = "MEDIUM"
    payload: dict[str, Any] = Field(default_factory=dict)
    source_event_id: str
    source_service: str = "unknown"
    created_at: datetime
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class UnreadCount(BaseModel):
    unread: int


class MarkAllReadResult(BaseModel):
    modified: int


# ─── Client → server frames ─────────────────────────────


class AckFrame(BaseModel):
    """Client acknowledges a notification as delivered or read."""
    type: Literal["ack"] = "ack"
    id: uuid.UUID
    status: Literal["delivered", "read"] = "delivered"


# ─── Server → client frames ─────────────────────────────


def notification_frame(notification: NotificationRead) -> dict[str, Any]:
    return {"type": "notification", "data": notification.model_dump(mode="json")}


PING_FRAME = {"type": "ping"}
PONG_FRAME = {"type": "pong"}
