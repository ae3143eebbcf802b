"""create tags table"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0002_create_tags"
down_revision = "0001_create_tasks"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tags",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("color", sa.String(length=20), nullable=False, server_default="gray"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_tags_user_id", "tags", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_tags_user_id", table_name="tags")
    op.drop_table("tags")
