"""SQLAlchemy ORM models — single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).

Key concepts:
- UUID primary keys (generated by the service, not the database)
- (recipient_id, source_event_id) is unique: reprocessing the same domain
  event can never produce a second row, whatever the consumer does
- delivered_at / read_at are only ever moved from NULL to a timestamp
- Portable column types (Uuid, JSON) so the same models run on
  PostgreSQL in production and SQLite in tests
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


class Notification(Base):
    """Durable per-recipient projection of a DomainEvent.

    Learn: never deleted by the delivery core; retention is handled
    outside. Undelivered rows are the backlog replayed on reconnect.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        UniqueConstraint(
            "recipient_id", "source_event_id", name="uq_notifications_source_event"
        ),
        Index("ix_notifications_recipient_created", "recipient_id", "created_at"),
        Index("ix_notifications_recipient_delivered", "recipient_id", "delivered_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(String(16), default="MEDIUM")
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    source_event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    source_service: Mapped[str] = mapped_column(String(64), default="unknown")

    # Python-side default: microsecond precision keeps backlog order stable.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    read_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class NotificationPreference(Base):
    """Per-recipient switches for in-app notifications.

    No row means the defaults (everything on); reads never create one.
    `types` only holds the types the recipient changed.
    """

    __tablename__ = "notification_preferences"

    recipient_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    in_app_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    types: Mapped[dict[str, bool]] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
