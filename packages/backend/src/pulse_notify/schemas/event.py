"""Pydantic schema for domain events consumed from the queue.

Learn: upstream services are written in several languages, so the event
accepts both snake_case and camelCase keys (eventId / event_id...).
The event id is the idempotency key: redelivering the same event must
never create a second notification.

String limits mirror the notification table columns, so an oversized id
is rejected when decoded instead of failing every insert attempt.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from pulse_notify.events.types import normalize_type


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DomainEvent(BaseModel):
    """A fact published by an upstream service about something done to a user."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    event_id: str = Field(..., min_length=1, max_length=128, description="Idempotency key")
    type: str = Field(..., max_length=32, description="Notification type or routing key")
    source_service: str = Field("unknown", max_length=64)
    recipient_id: str = Field(..., min_length=1, max_length=64)
    actor_id: Optional[str] = Field(None, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    @field_validator("type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        return normalize_type(value)

    @property
    def is_self_action(self) -> bool:
        """True when the actor is also the recipient (e.g. liking your own post)."""
        return self.actor_id is not None and self.actor_id == self.recipient_id
