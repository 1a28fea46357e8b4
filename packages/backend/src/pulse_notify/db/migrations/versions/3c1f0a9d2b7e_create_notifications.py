"""Create notifications table

Learn: the (recipient_id, source_event_id) unique constraint is what makes
event processing idempotent. The two composite indexes serve the backlog
query (undelivered by recipient) and the newest-first list endpoint.

Revision ID: 3c1f0a9d2b7e
Revises:
Create Date: 2026-10-16 09:12:44.180512
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3c1f0a9d2b7e'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "notifications",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("recipient_id", sa.String(64), nullable=False),
        sa.Column("actor_id", sa.String(64), nullable=True),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("priority", sa.String(16), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("source_event_id", sa.String(128), nullable=False),
        sa.Column("source_service", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "recipient_id", "source_event_id", name="uq_notifications_source_event"
        ),
    )
    op.create_index(
        "ix_notifications_recipient_created",
        "notifications",
        ["recipient_id", "created_at"],
    )
    op.create_index(
        "ix_notifications_recipient_delivered",
        "notifications",
        ["recipient_id", "delivered_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_notifications_recipient_delivered", table_name="notifications")
    op.drop_index("ix_notifications_recipient_created", table_name="notifications")
    op.drop_table("notifications")
