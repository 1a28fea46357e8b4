"""Pydantic schemas for per-recipient notification preferences.

Learn: this service only delivers in-app, so a recipient's preferences
come down to two switches: the in-app channel as a whole, and one flag
per notification type. Quiet hours belong to the push and email channels
and never hold back an in-app notification, so they are not modelled here.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from pulse_notify.events.types import NOTIFICATION_TYPES, normalize_type


def effective_types(overrides: dict[str, bool]) -> dict[str, bool]:
    """Every known type with its flag; types never changed default to on."""
    return {t: bool(overrides.get(t, True)) for t in sorted(NOTIFICATION_TYPES)}


class NotificationPreferences(BaseModel):
    recipient_id: str
    in_app_enabled: bool = True
    types: dict[str, bool] = Field(default_factory=lambda: effective_types({}))
    updated_at: Optional[datetime] = None

    def allows(self, notification_type: str) -> bool:
        """Whether a notification of this type should be created at all."""
        return self.in_app_enabled and self.types.get(notification_type, True)


class PreferencesUpdate(BaseModel):
    """Partial update; omitted fields keep their current value."""
    in_app_enabled: Optional[bool] = None
    types: dict[str, bool] = Field(default_factory=dict)

    @field_validator("types")
    @classmethod
    def _known_types(cls, value: dict[str, bool]) -> dict[str, bool]:
        normalized = {normalize_type(k): v for k, v in value.items()}
        unknown = sorted(set(normalized) - NOTIFICATION_TYPES)
        if unknown:
            raise ValueError(f"Unknown notification types: {', '.join(unknown)}")
        return normalized
