"""Create the shared merge template cache.

Revision ID: 0001
Revises:
Create Date: 2026-10-16
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "merge_template_cache",
        sa.Column("cache_key", sa.String(), nullable=False),
        sa.Column("target_name", sa.String(), nullable=False),
        sa.Column("source_signature", sa.String(length=64), nullable=False),
        sa.Column("template", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("use_count", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("cache_key", name="pk_merge_template_cache"),
    )
    op.create_index(
        "ix_merge_template_cache_target_name",
        "merge_template_cache",
        ["target_name"],
    )


def downgrade() -> None:
    op.drop_index("ix_merge_template_cache_target_name", table_name="merge_template_cache")
    op.drop_table("merge_template_cache")
