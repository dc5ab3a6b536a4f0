"""create research_cache, research_rate_limits, research_analytics

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "research_cache",
        sa.Column("query_hash", sa.String(64), primary_key=True),
        sa.Column("query_text", sa.Text(), nullable=False),
        sa.Column("system_prompt", sa.Text(), nullable=False, server_default=""),
        sa.Column("model", sa.String(64), nullable=True),
        sa.Column("response_text", sa.Text(), nullable=False),
        sa.Column("citations", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, index=True),
        sa.Column("last_accessed_at", sa.DateTime(), nullable=False),
        sa.Column("access_count", sa.Integer(), nullable=False, server_default="1"),
    )
    # Single row, created on first use with the configured limits
    op.create_table(
        "research_rate_limits",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("requests_per_minute", sa.Integer(), nullable=False),
        sa.Column("requests_per_day", sa.Integer(), nullable=False),
        sa.Column("last_reset_minute", sa.DateTime(), nullable=False),
        sa.Column("last_reset_day", sa.DateTime(), nullable=False),
        sa.Column("current_minute_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_day_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "research_analytics",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=True, index=True),
        sa.Column("query_text", sa.Text(), nullable=False),
        sa.Column("system_prompt", sa.Text(), nullable=True),
        sa.Column("model", sa.String(64), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_type", sa.String(32), nullable=True),
        sa.Column("response_time_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("timestamp", sa.DateTime(), nullable=False, index=True),
        sa.Column("cached", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("fallback", sa.Boolean(), nullable=False, server_default=sa.false()),
    )


def downgrade() -> None:
    op.drop_table("research_analytics")
    op.drop_table("research_rate_limits")
    op.drop_table("research_cache")
