"""Notification Store — durable record of notifications and their state.

Learn: the delivery core only depends on the NotificationStore interface
and one consistency promise: read-your-writes within a recipient's list,
so a notification created just before a reconnect is in the backlog.

Idempotency is enforced twice:
1. create() relies on the (recipient_id, source_event_id) unique
   constraint; a duplicate insert returns the existing row.
2. mark_delivered()/mark_read() are compare-and-set ("only if currently
   NULL"), so concurrent pushes from two instances set delivered_at once.

Preferences live in the same store: the consumer reads them before each
create, and a recipient without a preferences row gets the defaults.

Every SQL call is bounded by a timeout; any storage failure surfaces as
TransientStoreError so callers can retry (or leave the queue message
unacked).
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from typing import Awaitable, Optional, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulse_notify.db.models import Notification, NotificationPreference, utcnow
from pulse_notify.errors import TransientStoreError
from pulse_notify.events.render import render
from pulse_notify.schemas.event import DomainEvent
from pulse_notify.schemas.notification import NotificationRead
from pulse_notify.schemas.preferences import (
    NotificationPreferences,
    PreferencesUpdate,
    effective_types,
)

T = TypeVar("T")


class NotificationStore(ABC):
    """Persistence interface used by the consumer, dispatcher and sockets."""

    @abstractmethod
    async def create(self, event: DomainEvent) -> tuple[NotificationRead, bool]:
        """Persist the notification for an event.

        Returns (notification, created). created is False when a row for
        the same (recipient_id, source_event_id) already existed.
        """

    @abstractmethod
    async def mark_delivered(
        self, notification_id: uuid.UUID, recipient_id: Optional[str] = None
    ) -> bool:
        """Set delivered_at if unset. True if this call set it."""

    @abstractmethod
    async def mark_read(
        self, notification_id: uuid.UUID, recipient_id: Optional[str] = None
    ) -> bool:
        """Set read_at (and delivered_at) if unset. True if this call set read_at."""

    @abstractmethod
    async def get(
        self, notification_id: uuid.UUID, recipient_id: str
    ) -> Optional[NotificationRead]:
        """One of the recipient's notifications, or None."""

    @abstractmethod
    async def list_undelivered(self, recipient_id: str) -> list[NotificationRead]:
        """Undelivered notifications in creation order (the backlog)."""

    @abstractmethod
    async def exists_for_source_event(
        self, recipient_id: str, source_event_id: str
    ) -> bool:
        """Whether a notification for this event already exists."""

    @abstractmethod
    async def list_for_recipient(
        self,
        recipient_id: str,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[NotificationRead]:
        """Newest-first page of a recipient's notifications."""

    @abstractmethod
    async def unread_count(self, recipient_id: str) -> int:
        """Number of unread notifications."""

    @abstractmethod
    async def mark_all_read(self, recipient_id: str) -> int:
        """Mark every unread notification read. Returns rows changed."""

    @abstractmethod
    async def get_preferences(self, recipient_id: str) -> NotificationPreferences:
        """The recipient's preferences (defaults when never set)."""

    @abstractmethod
    async def update_preferences(
        self, recipient_id: str, update: PreferencesUpdate
    ) -> NotificationPreferences:
        """Apply a partial update and return the resulting preferences."""


def build_notification(event: DomainEvent) -> Notification:
    """Project a DomainEvent onto a new Notification row."""
    rendered = render(event.type, event.payload)
    return Notification(
        id=uuid.uuid4(),
        recipient_id=event.recipient_id,
        actor_id=event.actor_id,
        type=event.type,
        title=rendered.title,
        message=rendered.message,
        priority=rendered.priority,
        payload=dict(event.payload),
        source_event_id=event.event_id,
        source_service=event.source_service,
        created_at=utcnow(),
    )


def preferences_from_row(
    recipient_id: str, row: Optional[NotificationPreference]
) -> NotificationPreferences:
    if row is None:
        return NotificationPreferences(recipient_id=recipient_id)
    return NotificationPreferences(
        recipient_id=recipient_id,
        in_app_enabled=row.in_app_enabled,
        types=effective_types(row.types or {}),
        updated_at=row.updated_at,
    )


class SqlNotificationStore(NotificationStore):
    """NotificationStore backed by SQLAlchemy (PostgreSQL in production)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout: float = 3.0,
    ):
        self.session_factory = session_factory
        self.timeout = timeout

    async def _bounded(self, coro: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransientStoreError("Notification store timed out") from e
        except (SQLAlchemyError, OSError) as e:
            raise TransientStoreError(f"Notification store error: {e}") from e

    # ─── Writes ───────────────────────────────────────────

    async def create(self, event: DomainEvent) -> tuple[NotificationRead, bool]:
        return await self._bounded(self._create(event))

    async def _create(self, event: DomainEvent) -> tuple[NotificationRead, bool]:
        async with self.session_factory() as db:
            row = build_notification(event)
            db.add(row)
            try:
                await db.commit()
                return NotificationRead.model_validate(row), True
            except IntegrityError:
                await db.rollback()

            existing = (
                await db.execute(
                    select(Notification).where(
                        Notification.recipient_id == event.recipient_id,
                        Notification.source_event_id == event.event_id,
                    )
                )
            ).scalar_one()
            return NotificationRead.model_validate(existing), False

    async def mark_delivered(
        self, notification_id: uuid.UUID, recipient_id: Optional[str] = None
    ) -> bool:
        stmt = (
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.delivered_at.is_(None),
            )
            .values(delivered_at=utcnow())
        )
        if recipient_id is not None:
            stmt = stmt.where(Notification.recipient_id == recipient_id)
        return await self._bounded(self._update_one(stmt))

    async def mark_read(
        self, notification_id: uuid.UUID, recipient_id: Optional[str] = None
    ) -> bool:
        now = utcnow()
        stmt = (
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.read_at.is_(None),
            )
            .values(
                read_at=now,
                delivered_at=func.coalesce(Notification.delivered_at, now),
            )
        )
        if recipient_id is not None:
            stmt = stmt.where(Notification.recipient_id == recipient_id)
        return await self._bounded(self._update_one(stmt))

    async def _update_one(self, stmt) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount == 1

    async def mark_all_read(self, recipient_id: str) -> int:
        now = utcnow()
        stmt = (
            update(Notification)
            .where(
                Notification.recipient_id == recipient_id,
                Notification.read_at.is_(None),
            )
            .values(
                read_at=now,
                delivered_at=func.coalesce(Notification.delivered_at, now),
            )
        )
        return await self._bounded(self._update_many(stmt))

    async def _update_many(self, stmt) -> int:
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount

    # ─── Reads ────────────────────────────────────────────

    async def list_undelivered(self, recipient_id: str) -> list[NotificationRead]:
        query = (
            select(Notification)
            .where(
                Notification.recipient_id == recipient_id,
                Notification.delivered_at.is_(None),
            )
            .order_by(Notification.created_at, Notification.id)
        )
        return await self._bounded(self._fetch(query))

    async def get(
        self, notification_id: uuid.UUID, recipient_id: str
    ) -> Optional[NotificationRead]:
        query = select(Notification).where(
            Notification.id == notification_id,
            Notification.recipient_id == recipient_id,
        )
        rows = await self._bounded(self._fetch(query))
        return rows[0] if rows else None

    async def list_for_recipient(
        self,
        recipient_id: str,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[NotificationRead]:
        query = select(Notification).where(Notification.recipient_id == recipient_id)
        if unread_only:
            query = query.where(Notification.read_at.is_(None))
        query = (
            query.order_by(Notification.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return await self._bounded(self._fetch(query))

    async def _fetch(self, query) -> list[NotificationRead]:
        async with self.session_factory() as db:
            result = await db.execute(query)
            return [NotificationRead.model_validate(n) for n in result.scalars().all()]

    async def exists_for_source_event(
        self, recipient_id: str, source_event_id: str
    ) -> bool:
        query = select(Notification.id).where(
            Notification.recipient_id == recipient_id,
            Notification.source_event_id == source_event_id,
        )
        return await self._bounded(self._scalar(query)) is not None

    async def unread_count(self, recipient_id: str) -> int:
        query = select(func.count(Notification.id)).where(
            Notification.recipient_id == recipient_id,
            Notification.read_at.is_(None),
        )
        return await self._bounded(self._scalar(query)) or 0

    async def _scalar(self, query):
        async with self.session_factory() as db:
            return (await db.execute(query)).scalar_one_or_none()

    # ─── Preferences ──────────────────────────────────────

    async def get_preferences(self, recipient_id: str) -> NotificationPreferences:
        return await self._bounded(self._get_preferences(recipient_id))

    async def _get_preferences(self, recipient_id: str) -> NotificationPreferences:
        async with self.session_factory() as db:
            row = await db.get(NotificationPreference, recipient_id)
            return preferences_from_row(recipient_id, row)

    async def update_preferences(
        self, recipient_id: str, update: PreferencesUpdate
    ) -> NotificationPreferences:
        return await self._bounded(self._update_preferences(recipient_id, update))

    async def _update_preferences(
        self, recipient_id: str, update: PreferencesUpdate
    ) -> NotificationPreferences:
        async with self.session_factory() as db:
            row = await db.get(NotificationPreference, recipient_id)
            if row is None:
                row = NotificationPreference(
                    recipient_id=recipient_id, in_app_enabled=True, types={}
                )
                db.add(row)
            if update.in_app_enabled is not None:
                row.in_app_enabled = update.in_app_enabled
            if update.types:
                # New dict so the JSON column registers the change
                row.types = {**(row.types or {}), **update.types}
            row.updated_at = utcnow()
            await db.commit()
            return preferences_from_row(recipient_id, row)
