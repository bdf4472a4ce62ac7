"""deploy trigger publish marker

Revision ID: 0002_trigger_published_at
Revises: 0001_init
Create Date: 2026-10-18 15:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_trigger_published_at"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "deploy_triggers",
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
    )
    # Rows created before this column existed were published already.
    op.execute("UPDATE deploy_triggers SET published_at = created_at")


def downgrade() -> None:
    op.drop_column("deploy_triggers", "published_at")
