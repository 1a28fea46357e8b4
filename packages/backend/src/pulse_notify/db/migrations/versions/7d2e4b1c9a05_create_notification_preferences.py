"""Create notification_preferences table

Learn: one row per recipient, only once they change something. A missing
row means every type is on.

Revision ID: 7d2e4b1c9a05
Revises: 3c1f0a9d2b7e
Create Date: 2026-10-16 14:03:21.552907
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '7d2e4b1c9a05'
down_revision: Union[str, None] = '3c1f0a9d2b7e'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "notification_preferences",
        sa.Column("recipient_id", sa.String(64), primary_key=True),
        sa.Column("in_app_enabled", sa.Boolean(), nullable=False),
        sa.Column("types", sa.JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("notification_preferences")
